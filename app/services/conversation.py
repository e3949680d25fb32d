"""Per-requester conversation flow from search to confirmed request."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from ..models import ConversationSession, ConversationState, NormalizedResult, SeasonInfo
from ..repositories import SessionRepository
from ..utils import hash_identity, mask_address, utcnow
from .approval import ApprovalWorkflow
from .intents import Intent, IntentParser, extract_title
from .media_search import MediaSearchService
from .transport import ChatTransport

logger = logging.getLogger(__name__)

State = ConversationState

HELP_MESSAGE = (
    "I can help you find movies and TV series! Try saying something like:\n\n"
    '🎬 "I want to watch Inception"\n'
    '📺 "Find Breaking Bad series"\n'
    '🎬 "Search for The Matrix"'
)


class InvalidTransitionError(RuntimeError):
    """Raised when a session is moved along an edge the machine does not allow."""


class StateMachine:
    """Allowed state transitions for a conversation session."""

    TRANSITIONS: dict[ConversationState, frozenset[ConversationState]] = {
        State.IDLE: frozenset({State.SEARCHING, State.IDLE}),
        State.SEARCHING: frozenset({State.AWAITING_SELECTION, State.IDLE}),
        State.AWAITING_SELECTION: frozenset(
            {
                State.AWAITING_SEASON_SELECTION,
                State.AWAITING_CONFIRMATION,
                State.AWAITING_SELECTION,
                State.IDLE,
            }
        ),
        State.AWAITING_SEASON_SELECTION: frozenset(
            {State.AWAITING_CONFIRMATION, State.AWAITING_SEASON_SELECTION, State.IDLE}
        ),
        State.AWAITING_CONFIRMATION: frozenset(
            {State.PROCESSING, State.AWAITING_CONFIRMATION, State.IDLE}
        ),
        State.PROCESSING: frozenset({State.IDLE}),
    }

    _EXPECTED_INPUT: dict[ConversationState, str] = {
        State.IDLE: "a movie or series title",
        State.SEARCHING: "nothing, a search is running",
        State.AWAITING_SELECTION: "the number of a search result",
        State.AWAITING_SEASON_SELECTION: "season numbers or ALL",
        State.AWAITING_CONFIRMATION: "YES or NO",
        State.PROCESSING: "nothing, the request is being submitted",
    }

    def can_transition(self, current: ConversationState, target: ConversationState) -> bool:
        return target in self.TRANSITIONS[current]

    def transition(self, session: ConversationSession, target: ConversationState) -> None:
        if not self.can_transition(session.state, target):
            raise InvalidTransitionError(
                f"Cannot transition from {session.state.value} to {target.value}"
            )
        logger.debug("Session %s: %s -> %s", session.id, session.state.value, target.value)
        session.state = target

    def expected_input(self, state: ConversationState) -> str:
        return self._EXPECTED_INPUT[state]


@dataclass(slots=True)
class ConversationReply:
    message: str
    state: ConversationState
    session_id: str | None = None


@dataclass(slots=True)
class _RequesterLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ConversationService:
    """Drive one requester at a time through search, selection and confirmation.

    Messages from the same requester are serialized with a per-requester lock;
    different requesters proceed concurrently. Sessions expire ``session_ttl``
    seconds after their last update and are then replaced by a fresh one.
    """

    def __init__(
        self,
        sessions: SessionRepository,
        search: MediaSearchService,
        approvals: ApprovalWorkflow,
        transport: ChatTransport | None = None,
        *,
        session_ttl: float = 300,
        parser: IntentParser | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = sessions
        self._search = search
        self._approvals = approvals
        self._transport = transport
        self._ttl = timedelta(seconds=session_ttl)
        self._parser = parser or IntentParser()
        self._clock = clock
        self._machine = StateMachine()
        self._locks: dict[str, _RequesterLock] = {}

    async def has_active_session(self, address: str) -> bool:
        active = await self._sessions.get_active(hash_identity(address), self._clock())
        return active is not None

    async def handle_message(
        self, address: str, text: str, contact_name: str | None = None
    ) -> ConversationReply:
        """Process one inbound message and send the reply back to ``address``."""

        requester_id = hash_identity(address)
        entry = self._locks.get(requester_id)
        if entry is None:
            entry = self._locks[requester_id] = _RequesterLock()
        entry.users += 1
        try:
            async with entry.lock:
                reply = await self._process(requester_id, address, text, contact_name)
                if self._transport is not None:
                    await self._transport.send(address, reply.message)
        finally:
            entry.users -= 1
            # Entries live only while a message for the requester is in flight.
            if not entry.users:
                del self._locks[requester_id]
        return reply

    async def _load_session(
        self, requester_id: str, address: str, contact_name: str | None
    ) -> ConversationSession:
        now = self._clock()
        session = await self._sessions.get_for_requester(requester_id)
        if session is not None and session.is_expired(now):
            logger.info(
                "Session %s for %s expired in state %s",
                session.id,
                mask_address(address),
                session.state.value,
            )
            await self._sessions.delete(session.id)
            session = None
        if session is None:
            session = ConversationSession(
                id=str(uuid.uuid4()),
                requester_id=requester_id,
                created_at=now,
                updated_at=now,
                expires_at=now + self._ttl,
            )
        session.requester_address = address
        if contact_name:
            session.contact_name = contact_name
        return session

    async def _save(self, session: ConversationSession) -> None:
        now = self._clock()
        session.updated_at = now
        session.expires_at = now + self._ttl
        await self._sessions.save(session)

    def _reply(self, session: ConversationSession, message: str) -> ConversationReply:
        return ConversationReply(message=message, state=session.state, session_id=session.id)

    async def _process(
        self,
        requester_id: str,
        address: str,
        text: str,
        contact_name: str | None,
    ) -> ConversationReply:
        session = await self._load_session(requester_id, address, contact_name)
        intent = self._parser.parse(text, session.state)
        logger.debug(
            "Message from %s in %s (expecting %s) parsed as %s",
            mask_address(address),
            session.state.value,
            self._machine.expected_input(session.state),
            intent.kind,
        )

        if intent.kind == "cancel":
            return await self._cancel(session)

        state = session.state
        if state is State.IDLE:
            return await self._handle_idle(session, intent)
        if state is State.SEARCHING:
            return self._reply(session, "Please wait while I search for results...")
        if state is State.AWAITING_SELECTION:
            return await self._handle_selection(session, intent)
        if state is State.AWAITING_SEASON_SELECTION:
            return await self._handle_season_selection(session, intent)
        if state is State.AWAITING_CONFIRMATION:
            return await self._handle_confirmation(session, intent)
        return self._reply(session, "Please wait while I submit your request...")

    async def _cancel(self, session: ConversationSession) -> ConversationReply:
        if session.state is State.IDLE and session.search_results is None:
            return self._reply(session, "Nothing to cancel.\n\n" + HELP_MESSAGE)
        self._machine.transition(session, State.IDLE)
        session.clear_selection()
        await self._save(session)
        return self._reply(session, "❌ Request cancelled. Send a new message to start over.")

    async def _handle_idle(self, session: ConversationSession, intent: Intent) -> ConversationReply:
        if intent.kind != "media_request" or not intent.query or not intent.media_type:
            return self._reply(session, HELP_MESSAGE)

        session.clear_selection()
        self._machine.transition(session, State.SEARCHING)
        session.media_type = intent.media_type
        session.search_query = intent.query
        await self._save(session)

        try:
            outcome = await self._search.search(
                intent.media_type,
                intent.query,
                search_both=intent.media_type == "both",
            )
        except Exception:
            logger.exception("Search for %r failed", intent.query)
            self._machine.transition(session, State.IDLE)
            session.clear_selection()
            await self._save(session)
            return self._reply(session, "❌ Search failed. Please try again later.")

        if not outcome.results:
            self._machine.transition(session, State.IDLE)
            session.clear_selection()
            await self._save(session)
            return self._reply(
                session,
                f'❌ No results found for "{intent.query}".\n\n'
                "Try a different title or check the spelling.",
            )

        results = outcome.results
        _, year = extract_title(intent.query)
        if year is not None:
            # Stable sort: releases from the requested year move to the top.
            results = sorted(results, key=lambda result: result.year != year)

        self._machine.transition(session, State.AWAITING_SELECTION)
        session.search_results = results
        await self._save(session)
        return self._reply(session, self._results_message(results))

    @staticmethod
    def _results_message(results: list[NormalizedResult]) -> str:
        count = len(results)
        entries = "\n\n".join(
            result.to_list_entry(position) for position, result in enumerate(results, start=1)
        )
        plural = "s" if count > 1 else ""
        return (
            f"Found {count} result{plural}:\n\n{entries}\n\n"
            f"Reply with a number (1-{count}) to select, or CANCEL to start over."
        )

    async def _handle_selection(
        self, session: ConversationSession, intent: Intent
    ) -> ConversationReply:
        results = session.search_results or []
        if intent.kind != "selection" or intent.selection is None:
            return self._reply(
                session,
                f"Please select a number from the list (1-{len(results)}), "
                "or reply CANCEL to start over.",
            )
        if not 1 <= intent.selection <= len(results):
            return self._reply(session, f"Please choose a number between 1 and {len(results)}.")

        selected = session.select(intent.selection - 1)
        if selected.media_type == "series" and (selected.season_count or 0) > 1:
            seasons = await self._search.fetch_seasons(selected)
            if len(seasons) > 1:
                self._machine.transition(session, State.AWAITING_SEASON_SELECTION)
                session.available_seasons = seasons
                await self._save(session)
                return self._reply(session, self._season_prompt(selected, seasons))

        self._machine.transition(session, State.AWAITING_CONFIRMATION)
        await self._save(session)
        return self._reply(session, self._confirmation_message(selected, []))

    @staticmethod
    def _season_prompt(result: NormalizedResult, seasons: list[SeasonInfo]) -> str:
        listing = "\n".join(season.label() for season in seasons)
        return (
            f"📺 *{result.display_title()}* has {len(seasons)} seasons:\n\n"
            f"{listing}\n\n"
            "Reply with the seasons you want (e.g. 1 or 1,2,3), ALL for every season, "
            "or CANCEL to start over."
        )

    async def _handle_season_selection(
        self, session: ConversationSession, intent: Intent
    ) -> ConversationReply:
        result = session.selected_result
        if result is None:
            raise InvalidTransitionError(f"Session {session.id} has no selected result")
        available = [season.season_number for season in session.available_seasons or []]
        if intent.kind != "season_selection" or intent.seasons is None:
            return self._reply(
                session,
                "Please reply with season numbers (e.g. 1 or 1,2,3), ALL, or CANCEL.",
            )
        if intent.seasons == "all":
            chosen = list(available)
        else:
            missing = [number for number in intent.seasons if number not in available]
            if missing:
                listed = ", ".join(str(number) for number in missing)
                return self._reply(
                    session,
                    f"Season {listed} is not available. "
                    f"Choose from {', '.join(str(number) for number in available)}, or reply ALL.",
                )
            chosen = list(intent.seasons)

        self._machine.transition(session, State.AWAITING_CONFIRMATION)
        session.selected_seasons = chosen
        await self._save(session)
        return self._reply(session, self._confirmation_message(result, chosen))

    @staticmethod
    def _confirmation_message(result: NormalizedResult, seasons: list[int]) -> str:
        details = ""
        if seasons:
            details = "\n📺 Seasons: " + ", ".join(str(n) for n in seasons)
        elif result.season_count:
            details = f"\n📺 Seasons: {result.season_count}"
        overview = result.overview or "No description available."
        return (
            f"{result.emoji} You selected:\n\n"
            f"*{result.display_title()}*{details}\n\n"
            f"{overview}\n\n"
            "Reply *YES* to confirm or *NO* to cancel."
        )

    async def _handle_confirmation(
        self, session: ConversationSession, intent: Intent
    ) -> ConversationReply:
        if intent.kind != "confirmation" or not intent.confirmed:
            return self._reply(
                session, "Please reply *YES* to confirm your selection or *NO* to cancel."
            )

        self._machine.transition(session, State.PROCESSING)
        await self._save(session)
        try:
            outcome = await self._approvals.process_new_request(session)
            message = outcome.message
            logger.info(
                "Request #%s from %s finished as %s",
                outcome.request.id,
                mask_address(session.requester_address),
                outcome.request.status.value,
            )
        except Exception:
            logger.exception("Processing the request for session %s failed", session.id)
            message = (
                "❌ Failed to submit your request.\n\n"
                "An error occurred. Please try again later."
            )
        self._machine.transition(session, State.IDLE)
        await self._sessions.delete_for_requester(session.requester_id)
        return ConversationReply(message=message, state=State.IDLE, session_id=session.id)
