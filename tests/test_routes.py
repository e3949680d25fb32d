from __future__ import annotations

import asyncio
from typing import Any

import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import Settings
from app.database import Database
from app.main import register_routes
from app.repositories import RequestRepository, ServiceConfigRepository, SessionRepository
from app.services.approval import ApprovalWorkflow
from app.services.cache import SearchCache
from app.services.conversation import HELP_MESSAGE, ConversationService
from app.services.inbound import InboundMessageHandler
from app.services.media_search import MediaSearchService

REQUESTER = "15550101234"


def fake_radarr(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/v3/movie/lookup":
        return httpx.Response(200, json=[{"title": "Inception", "year": 2010, "tmdbId": 27205}])
    if request.url.path == "/api/v3/system/status":
        return httpx.Response(200, json={"version": "5.2.6"})
    if request.url.path == "/api/v3/qualityprofile":
        return httpx.Response(200, json=[{"id": 4, "name": "HD-1080p", "items": []}])
    if request.url.path == "/api/v3/rootfolder":
        return httpx.Response(200, json=[{"id": 1, "path": "/movies", "freeSpace": 1024}])
    return httpx.Response(201, json={"id": 1})


def build_app(tmp_path, **settings_overrides: Any) -> FastAPI:
    """Wire the real services against a temporary SQLite database."""

    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'routes.db'}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    settings = Settings(_env_file=None, **settings_overrides)
    sessions = SessionRepository(database.session_factory)
    requests = RequestRepository(database.session_factory)
    configs = ServiceConfigRepository(database.session_factory)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_radarr))
    search = MediaSearchService(configs, SearchCache(), http_client)
    approvals = ApprovalWorkflow(settings, requests, sessions, configs, search)
    conversations = ConversationService(sessions, search, approvals)

    app = FastAPI()
    register_routes(app)
    app.state.database = database
    app.state.requests = requests
    app.state.service_configs = configs
    app.state.search_service = search
    app.state.approval_workflow = approvals
    app.state.inbound_handler = InboundMessageHandler(conversations, approvals)
    return app


RADARR = {
    "name": "Radarr",
    "service_type": "radarr",
    "base_url": "http://radarr.local",
    "api_key": "secret",
}


def test_healthcheck(tmp_path) -> None:
    with TestClient(build_app(tmp_path)) as client:
        response = client.get("/healthz")

    assert response.json() == {"status": "ok"}


def test_services_are_listed_without_credentials(tmp_path) -> None:
    with TestClient(build_app(tmp_path)) as client:
        created = client.post("/api/services", json=RADARR)
        listed = client.get("/api/services")
        tested = client.post(f"/api/services/{created.json()['id']}/test")
        missing = client.post("/api/services/99/test")
        options = client.get(f"/api/services/{created.json()['id']}/options")
        invalid = client.post("/api/services", json={**RADARR, "priority": 9})

    assert created.status_code == 200
    assert "api_key" not in created.json()
    assert [service["name"] for service in listed.json()] == ["Radarr"]
    assert tested.json() == {
        "success": True,
        "message": "Successfully connected to Radarr",
        "version": "5.2.6",
    }
    assert missing.status_code == 404
    assert options.json() == {
        "quality_profiles": [{"id": 4, "name": "HD-1080p"}],
        "root_folders": [{"id": 1, "path": "/movies", "free_space": 1024}],
    }
    assert invalid.status_code == 422


def test_inbound_message_without_a_title_gets_help(tmp_path) -> None:
    with TestClient(build_app(tmp_path)) as client:
        response = client.post("/api/messages", json={"sender": REQUESTER, "text": "hi"})

    assert response.status_code == 200
    assert response.json() == {"handled": True, "route": "conversation", "response": HELP_MESSAGE}


def test_request_lifecycle_through_the_api(tmp_path) -> None:
    with TestClient(build_app(tmp_path, APPROVAL_MODE="manual")) as client:
        client.post("/api/services", json=RADARR)
        for text in ("find movie inception", "1", "yes"):
            reply = client.post("/api/messages", json={"sender": REQUESTER, "text": text})
        pending = client.get("/api/requests", params={"status": "pending"})
        request_id = pending.json()[0]["id"]
        cache = client.get("/api/search/cache")

        approved = client.post(f"/api/requests/{request_id}/approve")
        approved_again = client.post(f"/api/requests/{request_id}/approve")
        declined_missing = client.post("/api/requests/999/decline", json={"notes": "no"})
        bad_filter = client.get("/api/requests", params={"status": "bogus"})
        deleted = client.delete(f"/api/requests/{request_id}")
        remaining = client.get("/api/requests")
        cleared = client.delete("/api/search/cache")
        after_clear = client.get("/api/search/cache")

    assert reply.json()["response"].startswith("⏳ Your request is pending approval.")
    assert len(pending.json()) == 1
    assert pending.json()[0]["title"] == "Inception"
    assert cache.json()["entries"] == 1
    assert approved.status_code == 200
    assert approved.json()["status"] == "SUBMITTED"
    assert approved_again.status_code == 400
    assert declined_missing.status_code == 404
    assert bad_filter.status_code == 400
    assert deleted.status_code == 204
    assert remaining.json() == []
    assert cleared.json() == {"status": "cleared"}
    assert after_clear.json()["entries"] == 0


def test_notification_test_requires_configuration(tmp_path) -> None:
    with TestClient(build_app(tmp_path)) as client:
        response = client.post("/api/notifications/test")

    assert response.status_code == 400
    assert "not configured" in response.json()["detail"]
