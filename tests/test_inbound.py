"""Routing of inbound chat messages."""

from __future__ import annotations

import pytest

from app.config import Settings
from app.models import ConversationState
from app.services.approval import OperatorReply
from app.services.conversation import ConversationReply
from app.services.inbound import APOLOGY_MESSAGE, InboundMessageHandler

OPERATOR = "15550009999"
REQUESTER = "15550101234"


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


class StubApprovals:
    async def handle_operator_reply(self, address: str, text: str) -> OperatorReply:
        if address != OPERATOR:
            return OperatorReply(handled=False)
        return OperatorReply(handled=True, response=f"handled {text}")


class StubConversations:
    def __init__(self, active: bool = False, error: Exception | None = None) -> None:
        self.active = active
        self.error = error
        self.received: list[tuple[str, str, str | None]] = []

    async def has_active_session(self, address: str) -> bool:
        return self.active

    async def handle_message(
        self, address: str, text: str, contact_name: str | None = None
    ) -> ConversationReply:
        if self.error is not None:
            raise self.error
        self.received.append((address, text, contact_name))
        return ConversationReply(message=f"echo {text}", state=ConversationState.IDLE)


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def is_connected(self) -> bool:
        return True

    async def send(self, destination: str, text: str) -> bool:
        self.sent.append((destination, text))
        return True


def build_handler(conversations: StubConversations, transport=None, **filters) -> InboundMessageHandler:
    return InboundMessageHandler(
        conversations,  # type: ignore[arg-type]
        StubApprovals(),  # type: ignore[arg-type]
        transport,
        **filters,
    )


@pytest.mark.anyio("asyncio")
async def test_operator_replies_take_precedence() -> None:
    conversations = StubConversations()
    transport = RecordingTransport()
    handler = build_handler(conversations, transport)

    result = await handler.handle(OPERATOR, "approve 3")

    assert result.route == "operator"
    assert result.response == "handled approve 3"
    assert transport.sent == [(OPERATOR, "handled approve 3")]
    assert conversations.received == []


@pytest.mark.anyio("asyncio")
async def test_requester_messages_reach_the_conversation() -> None:
    conversations = StubConversations()
    handler = build_handler(conversations)

    result = await handler.handle(REQUESTER, "  find movie heat ", "Alex")

    assert result.route == "conversation"
    assert conversations.received == [(REQUESTER, "find movie heat", "Alex")]


@pytest.mark.anyio("asyncio")
async def test_prefix_filter_is_case_sensitive_and_stripped() -> None:
    conversations = StubConversations()
    handler = build_handler(conversations, filter_type="prefix", filter_value="!media")

    ignored = await handler.handle(REQUESTER, "!MEDIA heat")
    accepted = await handler.handle(REQUESTER, "!media heat")

    assert not ignored.handled
    assert accepted.handled
    assert conversations.received == [(REQUESTER, "heat", None)]


@pytest.mark.anyio("asyncio")
async def test_keyword_filter_removes_keyword_anywhere() -> None:
    conversations = StubConversations()
    handler = build_handler(conversations, filter_type="keyword", filter_value="plex")

    ignored = await handler.handle(REQUESTER, "find heat")
    accepted = await handler.handle(REQUESTER, "find heat on PLEX please")

    assert not ignored.handled
    assert conversations.received == [(REQUESTER, "find heat on please", None)]
    assert accepted.route == "conversation"


@pytest.mark.anyio("asyncio")
async def test_filter_is_bypassed_during_an_active_conversation() -> None:
    conversations = StubConversations(active=True)
    handler = build_handler(conversations, filter_type="prefix", filter_value="!media")

    result = await handler.handle(REQUESTER, "2")

    assert result.handled
    assert conversations.received == [(REQUESTER, "2", None)]


@pytest.mark.anyio("asyncio")
async def test_errors_produce_an_apology() -> None:
    transport = RecordingTransport()
    handler = build_handler(StubConversations(error=RuntimeError("database is locked")), transport)

    result = await handler.handle(REQUESTER, "heat")

    assert result.route == "error"
    assert transport.sent == [(REQUESTER, APOLOGY_MESSAGE)]


@pytest.mark.anyio("asyncio")
async def test_empty_messages_are_ignored() -> None:
    conversations = StubConversations()
    result = await build_handler(conversations).handle(REQUESTER, "   ")

    assert not result.handled
    assert conversations.received == []


@pytest.mark.anyio("asyncio")
async def test_filter_type_without_value_leaves_messages_unfiltered() -> None:
    conversations = StubConversations()
    handler = InboundMessageHandler.from_settings(
        Settings(_env_file=None, MESSAGE_FILTER_TYPE="prefix"),
        conversations,  # type: ignore[arg-type]
        StubApprovals(),  # type: ignore[arg-type]
    )

    result = await handler.handle(REQUESTER, "find heat")

    assert result.route == "conversation"
    assert conversations.received == [(REQUESTER, "find heat", None)]


@pytest.mark.anyio("asyncio")
async def test_configured_filter_is_applied_from_settings() -> None:
    conversations = StubConversations()
    handler = InboundMessageHandler.from_settings(
        Settings(_env_file=None, MESSAGE_FILTER_TYPE="keyword", MESSAGE_FILTER_VALUE="plex"),
        conversations,  # type: ignore[arg-type]
        StubApprovals(),  # type: ignore[arg-type]
    )

    ignored = await handler.handle(REQUESTER, "find heat")
    accepted = await handler.handle(REQUESTER, "plex heat")

    assert not ignored.handled
    assert accepted.route == "conversation"
    assert conversations.received == [(REQUESTER, "heat", None)]
