"""Persistence round trips through the SQLite repositories."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from app.database import Database
from app.models import (
    ConversationSession,
    ConversationState,
    MediaRequest,
    NormalizedResult,
    RequestStatus,
    SeasonInfo,
    ServiceConfiguration,
)
from app.repositories import RequestRepository, ServiceConfigRepository, SessionRepository


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


NOW = datetime(2024, 1, 1, 12, 0, 0)


async def _database(tmp_path) -> Database:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'repositories.db'}")
    await database.create_all()
    return database


@pytest.mark.anyio("asyncio")
async def test_session_round_trip_keeps_empty_and_absent_fields(tmp_path) -> None:
    database = await _database(tmp_path)
    repository = SessionRepository(database.session_factory)
    result = NormalizedResult(title="Dark", year=2017, tvdb_id=334824, media_type="series", season_count=3)
    session = ConversationSession(
        id="session-1",
        requester_id="requester",
        requester_address="15550101234",
        state=ConversationState.AWAITING_SEASON_SELECTION,
        media_type="series",
        search_query="dark",
        search_results=[result],
        selected_result_index=0,
        selected_result=result,
        available_seasons=[SeasonInfo(season_number=1, episode_count=10)],
        selected_seasons=[],
        created_at=NOW,
        updated_at=NOW,
        expires_at=NOW + timedelta(minutes=5),
    )

    try:
        await repository.save(session)
        loaded = await repository.get_for_requester("requester")
        active = await repository.get_active("requester", NOW)
        expired = await repository.get_active("requester", NOW + timedelta(minutes=5))
        removed = await repository.purge_expired(NOW + timedelta(minutes=10))
        gone = await repository.get_for_requester("requester")
    finally:
        await database.dispose()

    assert loaded == session
    assert loaded is not None and loaded.selected_seasons == []
    assert active is not None
    assert expired is None
    assert removed == 1
    assert gone is None


@pytest.mark.anyio("asyncio")
async def test_idle_sessions_are_not_active(tmp_path) -> None:
    database = await _database(tmp_path)
    repository = SessionRepository(database.session_factory)
    session = ConversationSession(
        id="session-2",
        requester_id="requester",
        created_at=NOW,
        updated_at=NOW,
        expires_at=NOW + timedelta(minutes=5),
    )

    try:
        await repository.save(session)
        session.state = ConversationState.AWAITING_SELECTION
        await repository.save(session)
        active = await repository.get_active("requester", NOW)
        await repository.delete_for_requester("requester")
        gone = await repository.get_active("requester", NOW)
    finally:
        await database.dispose()

    assert active is not None and active.state is ConversationState.AWAITING_SELECTION
    assert gone is None


@pytest.mark.anyio("asyncio")
async def test_request_repository_tracks_status_changes(tmp_path) -> None:
    database = await _database(tmp_path)
    repository = RequestRepository(database.session_factory)

    try:
        first = await repository.add(
            MediaRequest(requester_id="r", media_type="movie", title="Heat", year=1995, tmdb_id=949)
        )
        second = await repository.add(
            MediaRequest(requester_id="r", media_type="series", title="Dark", tvdb_id=334824, selected_seasons=[1])
        )
        latest = await repository.latest_pending()
        second.status = RequestStatus.SUBMITTED
        second.submitted_at = NOW
        await repository.update(second)
        pending = await repository.list_requests(status=RequestStatus.PENDING)
        everything = await repository.list_requests()
        deleted = await repository.delete(first.id)
        deleted_again = await repository.delete(first.id)
        with pytest.raises(KeyError):
            await repository.update(first)
    finally:
        await database.dispose()

    assert first.id is not None and first.created_at is not None
    assert latest is not None and latest.id == second.id
    assert [request.title for request in pending] == ["Heat"]
    assert {request.title for request in everything} == {"Heat", "Dark"}
    assert deleted and not deleted_again


@pytest.mark.anyio("asyncio")
async def test_service_configs_are_ordered_by_priority(tmp_path) -> None:
    database = await _database(tmp_path)
    repository = ServiceConfigRepository(database.session_factory)

    def config(name: str, service_type, priority: int, enabled: bool = True) -> ServiceConfiguration:
        return ServiceConfiguration(
            name=name,
            service_type=service_type,
            base_url=f"http://{name}.local",
            api_key="key",
            priority=priority,
            enabled=enabled,
        )

    try:
        backup = await repository.save(config("radarr-backup", "radarr", 3))
        await repository.save(config("radarr-main", "radarr", 1))
        await repository.save(config("sonarr-off", "sonarr", 1, enabled=False))
        radarr = await repository.list_enabled("radarr")
        enabled = await repository.list_enabled()
        backup.priority = 1
        backup.name = "radarr-renamed"
        updated = await repository.save(backup)
        with pytest.raises(KeyError):
            await repository.save(config("ghost", "radarr", 1).model_copy(update={"id": 99}))
        removed = await repository.delete(updated.id)
    finally:
        await database.dispose()

    assert [item.name for item in radarr] == ["radarr-main", "radarr-backup"]
    assert [item.name for item in enabled] == ["radarr-main", "radarr-backup"]
    assert updated.id == backup.id and updated.name == "radarr-renamed"
    assert removed
