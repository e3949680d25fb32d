"""Route inbound chat messages to the operator workflow or the conversation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from ..config import MessageFilterType, Settings
from ..utils import mask_address
from .approval import ApprovalWorkflow
from .conversation import ConversationService
from .transport import ChatTransport

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = "Sorry, something went wrong while handling your message. Please try again later."


@dataclass(slots=True)
class InboundResult:
    handled: bool
    response: str | None = None
    route: str = "ignored"


class InboundMessageHandler:
    """Entry point for every message received from the chat gateway."""

    def __init__(
        self,
        conversations: ConversationService,
        approvals: ApprovalWorkflow,
        transport: ChatTransport | None = None,
        *,
        filter_type: MessageFilterType | None = None,
        filter_value: str | None = None,
    ) -> None:
        self._conversations = conversations
        self._approvals = approvals
        self._transport = transport
        self._filter_type = filter_type
        self._filter_value = filter_value or ""

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        conversations: ConversationService,
        approvals: ApprovalWorkflow,
        transport: ChatTransport | None = None,
    ) -> "InboundMessageHandler":
        """Build a handler whose filter is on only when both type and value are set."""

        if not settings.message_filter_active:
            return cls(conversations, approvals, transport)
        return cls(
            conversations,
            approvals,
            transport,
            filter_type=settings.message_filter_type,
            filter_value=settings.message_filter_value,
        )

    def apply_filter(self, text: str) -> str | None:
        """Return the text to process, or ``None`` when the filter rejects it."""

        if self._filter_type is None:
            return text
        if self._filter_type == "prefix":
            if not text.startswith(self._filter_value):
                return None
            return text[len(self._filter_value):].strip()
        pattern = re.compile(re.escape(self._filter_value), re.IGNORECASE)
        if not pattern.search(text):
            return None
        return re.sub(r"\s+", " ", pattern.sub("", text)).strip()

    async def handle(
        self, sender: str, text: str, contact_name: str | None = None
    ) -> InboundResult:
        text = (text or "").strip()
        if not sender or not text:
            return InboundResult(handled=False)

        try:
            operator = await self._approvals.handle_operator_reply(sender, text)
            if operator.handled:
                if operator.response and self._transport is not None:
                    await self._transport.send(sender, operator.response)
                return InboundResult(handled=True, response=operator.response, route="operator")

            if self._filter_type is not None and not await self._conversations.has_active_session(
                sender
            ):
                filtered = self.apply_filter(text)
                if filtered is None:
                    logger.debug("Ignoring unfiltered message from %s", mask_address(sender))
                    return InboundResult(handled=False)
                if not filtered:
                    return InboundResult(handled=False)
                text = filtered

            reply = await self._conversations.handle_message(sender, text, contact_name)
            return InboundResult(handled=True, response=reply.message, route="conversation")
        except Exception:
            logger.exception("Error handling message from %s", mask_address(sender))
            if self._transport is not None:
                await self._transport.send(sender, APOLOGY_MESSAGE)
            return InboundResult(handled=True, response=APOLOGY_MESSAGE, route="error")
