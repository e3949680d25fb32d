"""Approval and operator notification workflow for media requests."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Literal

from ..config import ApprovalMode, Settings
from ..models import (
    ConversationSession,
    MediaRequest,
    RequestStatus,
    ServiceConfiguration,
)
from ..repositories import RequestRepository, ServiceConfigRepository, SessionRepository
from ..utils import hash_identity, mask_address, same_address, title_slug, utcnow
from .arr_clients import (
    BaseServiceClient,
    OverseerrClient,
    RadarrClient,
    ServiceRequestError,
    SonarrClient,
)
from .media_search import MediaSearchService
from .transport import ChatTransport

logger = logging.getLogger(__name__)

OperatorAction = Literal["approve", "decline", "delete"]

_COMMAND_RE = re.compile(r"^(\w+)\s*(\d+)?$")
_ACTION_WORDS: dict[str, OperatorAction] = {
    **{word: "approve" for word in ("approve", "yes", "a", "1")},
    **{word: "decline" for word in ("decline", "deny", "reject", "no", "d", "n", "2")},
    **{word: "delete" for word in ("delete", "del", "remove", "3")},
}
_ELIGIBLE_FOR_REVIEW = {RequestStatus.PENDING, RequestStatus.FAILED}
_INVERTED_MODES: dict[str, ApprovalMode] = {
    "auto_approve": "manual",
    "manual": "auto_approve",
    "auto_deny": "auto_approve",
}


class RequestNotFoundError(KeyError):
    """Raised when an operator acts on a request id that does not exist."""


class InvalidRequestStateError(ValueError):
    """Raised when a request's status does not allow the operator action."""

    def __init__(self, request: MediaRequest, action: str) -> None:
        super().__init__(
            f"Request #{request.id} cannot be {action} (status: {request.status.value})"
        )
        self.request = request


class SubmissionError(RuntimeError):
    """Raised when a request cannot be handed to the chosen service."""


@dataclass(slots=True)
class ApprovalOutcome:
    request: MediaRequest
    message: str


@dataclass(slots=True)
class OperatorReply:
    handled: bool
    response: str | None = None


@dataclass(slots=True)
class NotificationResult:
    success: bool
    message: str


class ApprovalWorkflow:
    """Turns confirmed selections into media requests and routes approvals."""

    def __init__(
        self,
        settings: Settings,
        requests: RequestRepository,
        sessions: SessionRepository,
        configs: ServiceConfigRepository,
        search: MediaSearchService,
        transport: ChatTransport | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._requests = requests
        self._sessions = sessions
        self._configs = configs
        self._search = search
        self._transport = transport
        self._clock = clock

    def operator_channel_available(self) -> bool:
        return bool(
            self._settings.admin_notifications_enabled
            and self._settings.admin_notification_address
            and self._transport is not None
            and self._transport.is_connected()
        )

    def effective_mode(self, requester_id: str, requester_address: str | None = None) -> ApprovalMode:
        """Return the approval mode for a requester, honouring exceptions."""

        mode = self._settings.approval_mode
        if not self._settings.approval_exceptions_enabled:
            return mode
        for entry in self._settings.approval_exceptions:
            if entry == requester_id or same_address(entry, requester_address):
                return _INVERTED_MODES[mode]
        return mode

    async def process_new_request(self, session: ConversationSession) -> ApprovalOutcome:
        """Create the request for a confirmed session and apply the approval policy."""

        result = session.selected_result
        if result is None:
            raise ValueError("Session has no selected result to request")

        request = MediaRequest.from_result(
            result,
            requester_id=session.requester_id,
            requester_address=session.requester_address,
            contact_name=session.contact_name,
            selected_seasons=session.selected_seasons,
        )
        choice = await self._search.highest_priority_service(request.media_type)
        if choice is None:
            request.status = RequestStatus.FAILED
            request.error_message = f"No media service is configured for {request.media_type} requests"
            stored = await self._requests.add(request)
            logger.warning("Request #%s failed: %s", stored.id, stored.error_message)
            return ApprovalOutcome(stored, self._failed_message(stored))

        request.service_type = choice.service_type
        request.service_config_id = choice.service_config_id

        if self.operator_channel_available():
            stored = await self._requests.add(request)
            await self._notify_operator(stored)
            logger.info("Request #%s is waiting for the operator", stored.id)
            return ApprovalOutcome(stored, self._pending_message(stored))

        mode = self.effective_mode(request.requester_id, request.requester_address)
        logger.info(
            "Applying %s to request for %s from %s",
            mode,
            request.title,
            mask_address(request.requester_address),
        )
        if mode == "auto_deny":
            request.status = RequestStatus.REJECTED
            request.admin_notes = "Auto-rejected by system settings"
            stored = await self._requests.add(request)
            return ApprovalOutcome(
                stored,
                "❌ Your request was automatically declined.\n\n"
                f"{stored.title_line()}\n\n"
                "Reason: Automatic approval is currently disabled.",
            )
        if mode == "manual":
            stored = await self._requests.add(request)
            return ApprovalOutcome(stored, self._pending_message(stored))

        stored = await self._requests.add(request)
        submitted = await self._submit(stored, choice.config)
        if submitted.status is RequestStatus.SUBMITTED:
            return ApprovalOutcome(
                submitted,
                "✅ Request submitted successfully!\n\n"
                f"{submitted.title_line()} has been added to the queue.\n\n"
                "You will be notified when it's available.",
            )
        return ApprovalOutcome(submitted, self._failed_message(submitted))

    @staticmethod
    def _pending_message(request: MediaRequest) -> str:
        return (
            "⏳ Your request is pending approval.\n\n"
            f"{request.title_line()}\n\n"
            "You will be notified once an administrator reviews your request."
        )

    @staticmethod
    def _failed_message(request: MediaRequest) -> str:
        reason = request.error_message or "An error occurred. Please try again later."
        return f"❌ Failed to submit your request.\n\n{request.title_line()}\n\n{reason}"

    async def _submit(
        self, request: MediaRequest, config: ServiceConfiguration
    ) -> MediaRequest:
        client = self._search.client_for(config)
        request.service_type = config.service_type
        request.service_config_id = config.id
        try:
            await self._dispatch(client, request, config)
        except (ServiceRequestError, SubmissionError) as exc:
            logger.warning("Submitting request #%s to %s failed: %s", request.id, config.name, exc)
            request.status = RequestStatus.FAILED
            request.error_message = str(exc)
            return await self._requests.update(request)
        request.status = RequestStatus.SUBMITTED
        request.error_message = None
        request.submitted_at = self._clock()
        logger.info("Request #%s submitted to %s", request.id, config.name)
        return await self._requests.update(request)

    async def _dispatch(
        self,
        client: BaseServiceClient,
        request: MediaRequest,
        config: ServiceConfiguration,
    ) -> None:
        if isinstance(client, RadarrClient):
            if request.media_type != "movie":
                raise SubmissionError("Radarr can only handle movie requests")
            if not request.tmdb_id:
                raise SubmissionError("Missing TMDB ID for movie request")
            await client.add_movie(
                title=request.title,
                year=request.year,
                tmdb_id=request.tmdb_id,
                title_slug=title_slug(request.title, request.tmdb_id),
                quality_profile_id=config.quality_profile_id or 1,
                root_folder_path=config.root_folder_path or "/movies",
            )
            return
        if isinstance(client, SonarrClient):
            if request.media_type != "series":
                raise SubmissionError("Sonarr can only handle series requests")
            if not request.tvdb_id:
                raise SubmissionError("Missing TVDB ID for series request")
            seasons = [
                {"seasonNumber": number, "monitored": True}
                for number in request.selected_seasons or []
            ]
            await client.add_series(
                title=request.title,
                year=request.year,
                tvdb_id=request.tvdb_id,
                title_slug=title_slug(request.title, request.tvdb_id),
                quality_profile_id=config.quality_profile_id or 1,
                root_folder_path=config.root_folder_path or "/tv",
                seasons=seasons,
            )
            return
        if isinstance(client, OverseerrClient):
            if not request.tmdb_id:
                raise SubmissionError("Missing TMDB ID for Overseerr request")
            if request.media_type == "movie":
                servers = await client.get_radarr_servers()
                label = "Radarr"
            else:
                servers = await client.get_sonarr_servers()
                label = "Sonarr"
            server = next((item for item in servers if item.is_default), None)
            server = server or (servers[0] if servers else None)
            if server is None:
                raise SubmissionError(f"No {label} server configured in Overseerr")
            profile_id = config.quality_profile_id or server.profile_id
            root_folder = config.root_folder_path or server.root_folder
            if request.media_type == "movie":
                await client.request_movie(
                    media_id=request.tmdb_id,
                    server_id=server.id,
                    profile_id=profile_id,
                    root_folder=root_folder,
                )
            else:
                await client.request_series(
                    media_id=request.tmdb_id,
                    server_id=server.id,
                    profile_id=profile_id,
                    root_folder=root_folder,
                    seasons=list(request.selected_seasons or []) or "all",
                )
            return
        raise SubmissionError(f"Unsupported service type: {config.service_type}")

    async def _load(self, request_id: int) -> MediaRequest:
        request = await self._requests.get(request_id)
        if request is None:
            raise RequestNotFoundError(f"Request #{request_id} not found")
        return request

    async def _resolve_config(self, request: MediaRequest) -> ServiceConfiguration:
        if request.service_config_id is not None:
            config = await self._configs.get(request.service_config_id)
            if config is not None and config.enabled:
                return config
        choice = await self._search.highest_priority_service(request.media_type)
        if choice is None:
            raise SubmissionError(f"No media service is configured for {request.media_type} requests")
        return choice.config

    async def approve(self, request_id: int) -> MediaRequest:
        """Submit a pending or failed request to its service."""

        request = await self._load(request_id)
        if request.status not in _ELIGIBLE_FOR_REVIEW:
            raise InvalidRequestStateError(request, "approved")
        try:
            config = await self._resolve_config(request)
        except SubmissionError as exc:
            request.status = RequestStatus.FAILED
            request.error_message = str(exc)
            updated = await self._requests.update(request)
        else:
            updated = await self._submit(request, config)
        if updated.status is RequestStatus.SUBMITTED:
            await self._notify_requester(
                updated,
                "✅ Your request has been approved!\n\n"
                f"{updated.title_line()} has been added to the queue.\n\n"
                "You will be notified when it's available.",
            )
        else:
            await self._notify_requester(updated, self._failed_message(updated))
        return updated

    async def decline(self, request_id: int, notes: str | None = None) -> MediaRequest:
        request = await self._load(request_id)
        if request.status not in _ELIGIBLE_FOR_REVIEW:
            raise InvalidRequestStateError(request, "declined")
        request.status = RequestStatus.REJECTED
        request.admin_notes = notes or "Declined by operator"
        updated = await self._requests.update(request)
        logger.info("Request #%s declined", updated.id)
        await self._notify_requester(
            updated, f"❌ Your request was declined.\n\n{updated.title_line()}"
        )
        return updated

    async def delete(self, request_id: int) -> MediaRequest:
        request = await self._load(request_id)
        await self._requests.delete(request_id)
        logger.info("Request #%s deleted", request_id)
        return request

    def is_operator(self, address: str) -> bool:
        return same_address(self._settings.admin_notification_address, address)

    async def handle_operator_reply(self, address: str, text: str) -> OperatorReply:
        """Interpret an operator's chat reply to a request notification."""

        if not self.is_operator(address):
            return OperatorReply(handled=False)
        # An operator who is requesting media themselves is talking to the bot.
        if await self._sessions.get_active(hash_identity(address), self._clock()):
            return OperatorReply(handled=False)

        match = _COMMAND_RE.match((text or "").strip())
        if not match:
            return OperatorReply(handled=False)
        action = _ACTION_WORDS.get(match.group(1).lower())
        if action is None:
            return OperatorReply(handled=False)

        request_id = int(match.group(2)) if match.group(2) else None
        if request_id is None:
            latest = await self._requests.latest_pending()
            request_id = latest.id if latest else None
        if request_id is None:
            return OperatorReply(
                handled=True,
                response="❌ No pending request found. Please specify a request ID.",
            )

        try:
            if action == "approve":
                request = await self.approve(request_id)
                if request.status is RequestStatus.SUBMITTED:
                    response = f"✅ Request #{request.id} approved and submitted.\n\n{request.title_line()}"
                else:
                    response = (
                        f"❌ Failed to approve request #{request.id}: "
                        f"{request.error_message or 'Unknown error'}"
                    )
            elif action == "decline":
                request = await self.decline(request_id, "Declined via chat reply")
                response = f"✅ Request #{request.id} declined.\n\n{request.title_line()}"
            else:
                request = await self.delete(request_id)
                response = f"✅ Request #{request.id} deleted.\n\n{request.title_line()}"
        except RequestNotFoundError:
            response = f"❌ Request #{request_id} not found."
        except InvalidRequestStateError as exc:
            response = f"❌ {exc}"
        return OperatorReply(handled=True, response=response)

    async def _notify_operator(self, request: MediaRequest) -> bool:
        address = self._settings.admin_notification_address
        if not address or self._transport is None:
            return False
        requester = request.contact_name or mask_address(request.requester_address)
        seasons = ""
        if request.selected_seasons:
            seasons = "\nSeasons: " + ", ".join(str(number) for number in request.selected_seasons)
        message = (
            f"🔔 *New Media Request #{request.id}*\n\n"
            f"{request.title_line()}{seasons}\n"
            f"📱 Requested by: {requester}\n"
            f"⏰ Status: {request.status.value}\n\n"
            "Reply with:\n"
            "• *APPROVE* or *1* - Approve request\n"
            "• *DECLINE* or *2* - Decline request\n"
            "• *DELETE* or *3* - Delete request"
        )
        sent = await self._transport.send(address, message)
        if sent:
            logger.info("Operator notified about request #%s", request.id)
        return sent

    async def _notify_requester(self, request: MediaRequest, message: str) -> bool:
        if not request.requester_address or self._transport is None:
            return False
        return await self._transport.send(request.requester_address, message)

    async def send_test_notification(self) -> NotificationResult:
        if not self._settings.admin_notifications_enabled:
            return NotificationResult(
                False,
                "Admin notifications are not configured. Set an address and enable notifications.",
            )
        address = self._settings.admin_notification_address
        if not address:
            return NotificationResult(False, "Admin notification address is not set.")
        if self._transport is None or not self._transport.is_connected():
            return NotificationResult(False, "The chat transport is not connected.")
        sent = await self._transport.send(
            address,
            "🔔 *Admin Notification Test*\n\n"
            "If you received this message, admin notifications are working correctly!\n\n"
            f"_Sent at: {self._clock():%Y-%m-%d %H:%M} UTC_",
        )
        if not sent:
            return NotificationResult(False, "Failed to send test notification.")
        return NotificationResult(True, "Test notification sent successfully.")
