"""Entry point for the FastAPI-powered chat request service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field

from .config import settings
from .database import Database
from .models import RequestStatus, ServiceConfiguration
from .repositories import RequestRepository, ServiceConfigRepository, SessionRepository
from .services.approval import ApprovalWorkflow, InvalidRequestStateError, RequestNotFoundError
from .services.arr_clients import RadarrClient, ServiceRequestError, SonarrClient
from .services.cache import SearchCache
from .services.conversation import ConversationService
from .services.inbound import InboundMessageHandler
from .services.media_search import MediaSearchService
from .services.transport import GatewayChatTransport

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

app: FastAPI


class InboundMessage(BaseModel):
    sender: str = Field(min_length=1)
    text: str
    contact_name: str | None = None


class DeclinePayload(BaseModel):
    notes: str | None = None


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            timeout=httpx.Timeout(settings.service_http_timeout_seconds, connect=5.0)
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    sessions = SessionRepository(database.session_factory)
    requests = RequestRepository(database.session_factory)
    configs = ServiceConfigRepository(database.session_factory)
    await sessions.purge_expired()

    cache = SearchCache(
        settings.search_cache_ttl_seconds,
        sweep_interval=settings.cache_sweep_interval_seconds,
    )
    search = MediaSearchService(
        configs,
        cache,
        http_client,
        search_timeout=settings.search_timeout_seconds,
        http_timeout=settings.service_http_timeout_seconds,
        default_max_results=settings.default_max_results,
    )
    transport = GatewayChatTransport(
        http_client,
        str(settings.chat_gateway_url) if settings.chat_gateway_url else None,
        settings.chat_gateway_token,
    )
    approvals = ApprovalWorkflow(settings, requests, sessions, configs, search, transport)
    conversations = ConversationService(
        sessions,
        search,
        approvals,
        transport,
        session_ttl=settings.session_ttl_seconds,
    )
    inbound = InboundMessageHandler.from_settings(settings, conversations, approvals, transport)

    fastapi_app.state.database = database
    fastapi_app.state.requests = requests
    fastapi_app.state.service_configs = configs
    fastapi_app.state.search_service = search
    fastapi_app.state.approval_workflow = approvals
    fastapi_app.state.inbound_handler = inbound
    cache.start_sweeper()
    logger.info(
        "Started %s (approval mode %s, gateway %s)",
        settings.app_name,
        settings.approval_mode,
        "configured" if transport.is_connected() else "not configured",
    )

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await cache.stop_sweeper()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Request movies and TV series from Radarr, Sonarr and Overseerr over chat",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_routes(fastapi_app)
    return fastapi_app


def _state(fastapi_app: FastAPI, name: str, expected: type) -> Any:
    value = getattr(fastapi_app.state, name, None)
    if not isinstance(value, expected):
        raise RuntimeError(f"{name.replace('_', ' ').capitalize()} not initialised")
    return value


def get_inbound_handler(fastapi_app: FastAPI) -> InboundMessageHandler:
    return _state(fastapi_app, "inbound_handler", InboundMessageHandler)


def get_approval_workflow(fastapi_app: FastAPI) -> ApprovalWorkflow:
    return _state(fastapi_app, "approval_workflow", ApprovalWorkflow)


def get_search_service(fastapi_app: FastAPI) -> MediaSearchService:
    return _state(fastapi_app, "search_service", MediaSearchService)


def get_request_repository(fastapi_app: FastAPI) -> RequestRepository:
    return _state(fastapi_app, "requests", RequestRepository)


def get_service_config_repository(fastapi_app: FastAPI) -> ServiceConfigRepository:
    return _state(fastapi_app, "service_configs", ServiceConfigRepository)


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/messages")
    async def receive_message(message: InboundMessage) -> dict[str, Any]:
        handler = get_inbound_handler(fastapi_app)
        result = await handler.handle(message.sender, message.text, message.contact_name)
        return {"handled": result.handled, "route": result.route, "response": result.response}

    @fastapi_app.get("/api/requests")
    async def list_requests(status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        repository = get_request_repository(fastapi_app)
        try:
            status_filter = RequestStatus(status.upper()) if status else None
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}") from exc
        requests = await repository.list_requests(status=status_filter, limit=max(1, min(limit, 500)))
        return [request.model_dump(mode="json") for request in requests]

    @fastapi_app.post("/api/requests/{request_id}/approve")
    async def approve_request(request_id: int) -> dict[str, Any]:
        workflow = get_approval_workflow(fastapi_app)
        try:
            request = await workflow.approve(request_id)
        except RequestNotFoundError as exc:
            raise HTTPException(status_code=404, detail=f"Request #{request_id} not found") from exc
        except InvalidRequestStateError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return request.model_dump(mode="json")

    @fastapi_app.post("/api/requests/{request_id}/decline")
    async def decline_request(
        request_id: int, payload: DeclinePayload | None = None
    ) -> dict[str, Any]:
        workflow = get_approval_workflow(fastapi_app)
        try:
            request = await workflow.decline(request_id, payload.notes if payload else None)
        except RequestNotFoundError as exc:
            raise HTTPException(status_code=404, detail=f"Request #{request_id} not found") from exc
        except InvalidRequestStateError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return request.model_dump(mode="json")

    @fastapi_app.delete("/api/requests/{request_id}", status_code=204)
    async def delete_request(request_id: int) -> Response:
        workflow = get_approval_workflow(fastapi_app)
        try:
            await workflow.delete(request_id)
        except RequestNotFoundError as exc:
            raise HTTPException(status_code=404, detail=f"Request #{request_id} not found") from exc
        return Response(status_code=204)

    @fastapi_app.get("/api/services")
    async def list_services() -> list[dict[str, object]]:
        repository = get_service_config_repository(fastapi_app)
        return [config.public_view() for config in await repository.list_all()]

    @fastapi_app.post("/api/services")
    async def save_service(config: ServiceConfiguration) -> dict[str, object]:
        repository = get_service_config_repository(fastapi_app)
        try:
            saved = await repository.save(config)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        get_search_service(fastapi_app).clear_cache()
        logger.info("Saved %s service %r", saved.service_type, saved.name)
        return saved.public_view()

    @fastapi_app.delete("/api/services/{config_id}", status_code=204)
    async def delete_service(config_id: int) -> Response:
        repository = get_service_config_repository(fastapi_app)
        if not await repository.delete(config_id):
            raise HTTPException(status_code=404, detail=f"Service {config_id} not found")
        get_search_service(fastapi_app).clear_cache()
        return Response(status_code=204)

    @fastapi_app.post("/api/services/{config_id}/test")
    async def test_service(config_id: int) -> dict[str, Any]:
        repository = get_service_config_repository(fastapi_app)
        config = await repository.get(config_id)
        if config is None:
            raise HTTPException(status_code=404, detail=f"Service {config_id} not found")
        try:
            client = get_search_service(fastapi_app).client_for(config)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        result = await client.test_connection()
        return {"success": result.success, "message": result.message, "version": result.version}

    @fastapi_app.get("/api/services/{config_id}/options")
    async def service_options(config_id: int) -> dict[str, Any]:
        """Quality profiles and root folders offered by a Radarr or Sonarr instance."""

        repository = get_service_config_repository(fastapi_app)
        config = await repository.get(config_id)
        if config is None:
            raise HTTPException(status_code=404, detail=f"Service {config_id} not found")
        client = get_search_service(fastapi_app).client_for(config)
        if not isinstance(client, (RadarrClient, SonarrClient)):
            raise HTTPException(
                status_code=400,
                detail=f"{config.service_type} does not expose quality profiles",
            )
        try:
            profiles = await client.get_quality_profiles()
            folders = await client.get_root_folders()
        except ServiceRequestError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"quality_profiles": profiles, "root_folders": folders}

    @fastapi_app.get("/api/search/cache")
    async def cache_stats() -> dict[str, float | int]:
        return get_search_service(fastapi_app).cache_stats().as_dict()

    @fastapi_app.delete("/api/search/cache")
    async def clear_search_cache() -> dict[str, str]:
        get_search_service(fastapi_app).clear_cache()
        return {"status": "cleared"}

    @fastapi_app.post("/api/notifications/test")
    async def test_notification() -> dict[str, Any]:
        result = await get_approval_workflow(fastapi_app).send_test_notification()
        if not result.success:
            raise HTTPException(status_code=400, detail=result.message)
        return {"success": True, "message": result.message}


app = create_app()
