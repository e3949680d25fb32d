"""Persistence helpers translating between ORM rows and pydantic models."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import ConversationSessionRecord, MediaRequestRecord, MediaServiceRecord
from .models import (
    ConversationSession,
    ConversationState,
    MediaRequest,
    RequestStatus,
    ServiceConfiguration,
    ServiceType,
)
from .utils import utcnow

logger = logging.getLogger(__name__)


class SessionRepository:
    """Stores one conversation session per requester."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_for_requester(self, requester_id: str) -> ConversationSession | None:
        async with self._session_factory() as session:
            stmt = (
                select(ConversationSessionRecord)
                .where(ConversationSessionRecord.requester_id == requester_id)
                .order_by(ConversationSessionRecord.updated_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
        if record is None:
            return None
        return ConversationSession.model_validate(record)

    async def get_active(
        self, requester_id: str, now: datetime | None = None
    ) -> ConversationSession | None:
        """Return the requester's session if it is mid-conversation and unexpired."""

        conversation = await self.get_for_requester(requester_id)
        if conversation is None:
            return None
        if conversation.is_expired(now or utcnow()):
            return None
        if conversation.state is ConversationState.IDLE:
            return None
        return conversation

    async def save(self, conversation: ConversationSession) -> ConversationSession:
        """Insert or update the session row."""

        values = self._record_values(conversation)
        async with self._session_factory() as session:
            record = await session.get(ConversationSessionRecord, conversation.id)
            if record is None:
                session.add(ConversationSessionRecord(**values))
            else:
                for key, value in values.items():
                    setattr(record, key, value)
            await session.commit()
        return conversation

    async def delete(self, session_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(ConversationSessionRecord).where(
                    ConversationSessionRecord.id == session_id
                )
            )
            await session.commit()

    async def delete_for_requester(self, requester_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(ConversationSessionRecord).where(
                    ConversationSessionRecord.requester_id == requester_id
                )
            )
            await session.commit()

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Remove every session whose expiry has passed."""

        cutoff = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ConversationSessionRecord).where(
                    ConversationSessionRecord.expires_at <= cutoff
                )
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Purged %s expired conversation sessions", removed)
        return removed

    @staticmethod
    def _record_values(conversation: ConversationSession) -> dict[str, Any]:
        def _dump_list(items: list[Any] | None) -> list[Any] | None:
            if items is None:
                return None
            return [item.model_dump(mode="json") for item in items]

        selected = conversation.selected_result
        return {
            "id": conversation.id,
            "requester_id": conversation.requester_id,
            "requester_address": conversation.requester_address,
            "contact_name": conversation.contact_name,
            "state": conversation.state.value,
            "media_type": conversation.media_type,
            "search_query": conversation.search_query,
            "search_results": _dump_list(conversation.search_results),
            "selected_result_index": conversation.selected_result_index,
            "selected_result": (
                selected.model_dump(mode="json") if selected is not None else None
            ),
            "available_seasons": _dump_list(conversation.available_seasons),
            "selected_seasons": (
                list(conversation.selected_seasons)
                if conversation.selected_seasons is not None
                else None
            ),
            "created_at": conversation.created_at,
            "updated_at": conversation.updated_at,
            "expires_at": conversation.expires_at,
        }


class RequestRepository:
    """CRUD access to media requests."""

    _MUTABLE_FIELDS = (
        "status",
        "error_message",
        "admin_notes",
        "service_type",
        "service_config_id",
        "submitted_at",
    )

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def add(self, request: MediaRequest) -> MediaRequest:
        payload = request.model_dump(exclude={"id", "created_at", "updated_at"})
        payload["status"] = request.status.value
        async with self._session_factory() as session:
            record = MediaRequestRecord(**payload)
            session.add(record)
            await session.commit()
            await session.refresh(record)
        return MediaRequest.model_validate(record)

    async def get(self, request_id: int) -> MediaRequest | None:
        async with self._session_factory() as session:
            record = await session.get(MediaRequestRecord, request_id)
        if record is None:
            return None
        return MediaRequest.model_validate(record)

    async def update(self, request: MediaRequest) -> MediaRequest:
        """Persist status and bookkeeping changes made to ``request``."""

        if request.id is None:
            raise ValueError("Cannot update a request that was never stored")
        async with self._session_factory() as session:
            record = await session.get(MediaRequestRecord, request.id)
            if record is None:
                raise KeyError(f"Request {request.id} not found")
            for field in self._MUTABLE_FIELDS:
                value = getattr(request, field)
                if isinstance(value, RequestStatus):
                    value = value.value
                setattr(record, field, value)
            await session.commit()
            await session.refresh(record)
        return MediaRequest.model_validate(record)

    async def latest_pending(self) -> MediaRequest | None:
        async with self._session_factory() as session:
            stmt = (
                select(MediaRequestRecord)
                .where(MediaRequestRecord.status == RequestStatus.PENDING.value)
                .order_by(MediaRequestRecord.created_at.desc(), MediaRequestRecord.id.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
        if record is None:
            return None
        return MediaRequest.model_validate(record)

    async def list_requests(
        self, *, status: RequestStatus | None = None, limit: int = 100
    ) -> list[MediaRequest]:
        async with self._session_factory() as session:
            stmt = select(MediaRequestRecord).order_by(
                MediaRequestRecord.created_at.desc(), MediaRequestRecord.id.desc()
            )
            if status is not None:
                stmt = stmt.where(MediaRequestRecord.status == status.value)
            result = await session.execute(stmt.limit(limit))
            records = result.scalars().all()
        return [MediaRequest.model_validate(record) for record in records]

    async def delete(self, request_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(MediaRequestRecord).where(MediaRequestRecord.id == request_id)
            )
            await session.commit()
        return bool(result.rowcount)


class ServiceConfigRepository:
    """Read and maintain the configured media services."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_all(self) -> list[ServiceConfiguration]:
        async with self._session_factory() as session:
            stmt = select(MediaServiceRecord).order_by(
                MediaServiceRecord.service_type,
                MediaServiceRecord.priority,
                MediaServiceRecord.id,
            )
            result = await session.execute(stmt)
            records = result.scalars().all()
        return [ServiceConfiguration.model_validate(record) for record in records]

    async def list_enabled(
        self, service_type: ServiceType | None = None
    ) -> list[ServiceConfiguration]:
        """Return enabled services ordered by priority (lowest first)."""

        async with self._session_factory() as session:
            stmt = select(MediaServiceRecord).where(MediaServiceRecord.enabled.is_(True))
            if service_type is not None:
                stmt = stmt.where(MediaServiceRecord.service_type == service_type)
            stmt = stmt.order_by(MediaServiceRecord.priority, MediaServiceRecord.id)
            result = await session.execute(stmt)
            records = result.scalars().all()
        return [ServiceConfiguration.model_validate(record) for record in records]

    async def get(self, config_id: int) -> ServiceConfiguration | None:
        async with self._session_factory() as session:
            record = await session.get(MediaServiceRecord, config_id)
        if record is None:
            return None
        return ServiceConfiguration.model_validate(record)

    async def save(self, config: ServiceConfiguration) -> ServiceConfiguration:
        """Insert a new configuration or update the one matching ``config.id``."""

        values = config.model_dump(exclude={"id"})
        async with self._session_factory() as session:
            record: MediaServiceRecord | None = None
            if config.id is not None:
                record = await session.get(MediaServiceRecord, config.id)
                if record is None:
                    raise KeyError(f"Service configuration {config.id} not found")
            if record is None:
                record = MediaServiceRecord(**values)
                session.add(record)
            else:
                for key, value in values.items():
                    setattr(record, key, value)
            await session.commit()
            await session.refresh(record)
        return ServiceConfiguration.model_validate(record)

    async def delete(self, config_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(MediaServiceRecord).where(MediaServiceRecord.id == config_id)
            )
            await session.commit()
        return bool(result.rowcount)
