import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.engine import Engine
from starlette.concurrency import run_in_threadpool
from starlette.middleware.cors import CORSMiddleware

# Load environment variables from .env, but not under pytest to keep tests deterministic
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from maraum import __version__
from maraum.errors import MaraumError, ValidationFailure
from maraum.gateway import GenerationGateway
from maraum.metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL, SESSIONS_STARTED_TOTAL
from maraum.middleware.request_id import RequestIdMiddleware
from maraum.orchestrator import MessageOrchestrator
from maraum.providers.base import GenerationClient
from maraum.providers.factory import get_generation_client
from maraum.settings import Settings, load_settings
from maraum.store.engine import build_engine, build_session_factory, init_db
from maraum.store.lifecycle import get_session, session_to_dict, start_session
from maraum.store.queries import DEFAULT_PAGE_LIMIT, all_messages, list_messages, page_to_dict
from maraum.store.scenarios import (
    get_active_scenario,
    list_active_scenarios,
    scenario_to_dict,
    seed_default_scenarios,
)

logger = logging.getLogger("maraum.chat")


def _configure_logging(level_name: str) -> None:
    # Emit under Uvicorn: honor LOG_LEVEL, attach a handler once, no double logging via root
    lvl = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger("maraum")
    root.setLevel(lvl)
    if not root.handlers:
        h = logging.StreamHandler()
        h.setLevel(lvl)
        h.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(h)
    root.propagate = False


def _request_id(request: Request) -> Optional[str]:
    return getattr(getattr(request, "state", object()), "request_id", None) or request.headers.get("x-request-id")


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationFailure("invalid JSON body", {"body": ["must be a JSON object"]}) from None
    if not isinstance(payload, dict):
        raise ValidationFailure("invalid JSON body", {"body": ["must be a JSON object"]})
    return payload


def _query_int(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationFailure(f"invalid {name}", {name: ["must be an integer"]}) from None


def _query_bool(request: Request, name: str) -> bool:
    return (request.query_params.get(name) or "").strip().lower() in ("1", "true", "yes", "on")


def _parse_scenario_id(raw: Any) -> int:
    if isinstance(raw, bool):
        raise ValidationFailure("invalid scenario_id", {"scenario_id": ["must be an integer"]})
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationFailure("invalid scenario_id", {"scenario_id": ["must be an integer"]}) from None


async def _maraum_error_handler(request: Request, exc: MaraumError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(json.dumps({
            "event": "request_failed",
            "requestId": _request_id(request),
            "path": request.url.path,
            "kind": exc.kind,
            "details": exc.details,
        }))
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def _http_metrics_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]):
    t0 = time.perf_counter()
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 500)
        return response
    finally:
        # Route templates keep label cardinality bounded
        route = request.scope.get("route")
        path = getattr(route, "path", None) or request.url.path
        status_class = f"{status_code // 100}xx"
        HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status_class=status_class).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(time.perf_counter() - t0)


router = APIRouter()


@router.get("/health", tags=["meta"], description="Liveness endpoint for health checks.")
async def health():
    return {"status": "ok"}


@router.get("/metrics", tags=["meta"], include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/api/scenarios", tags=["scenarios"], description="Active scenarios in display order.")
def scenarios_list(request: Request):
    with request.app.state.session_factory() as db:
        items = list_active_scenarios(db)
        return {"scenarios": [scenario_to_dict(s) for s in items]}


@router.get("/api/scenarios/{scenario_id}", tags=["scenarios"], description="One active scenario.")
def scenarios_get(request: Request, scenario_id: str):
    sid = _parse_scenario_id(scenario_id)
    with request.app.state.session_factory() as db:
        return scenario_to_dict(get_active_scenario(db, sid))


@router.post(
    "/api/sessions",
    tags=["sessions"],
    status_code=201,
    description="Start a session for a scenario; seeds the opening message of both chats.",
)
async def sessions_start(request: Request):
    payload = await _json_body(request)
    scenario_id = _parse_scenario_id(payload.get("scenario_id"))
    owner_id = payload.get("owner_id")
    if owner_id is not None and (not isinstance(owner_id, str) or not owner_id.strip() or len(owner_id) > 128):
        raise ValidationFailure("invalid owner_id", {"owner_id": ["must be a non-empty string of at most 128 characters"]})

    def _start() -> Dict[str, Any]:
        with request.app.state.session_factory() as db:
            session = start_session(db, scenario_id=scenario_id, owner_id=owner_id)
            out = session_to_dict(session)
            out["messages"] = [m.to_dict() for m in all_messages(db, session.id)]
            return out

    # The body is read on the loop; the transaction runs in the threadpool
    body = await run_in_threadpool(_start)
    SESSIONS_STARTED_TOTAL.labels(scenario_id=str(scenario_id)).inc()
    logger.info(json.dumps({
        "event": "session_start_request",
        "requestId": _request_id(request),
        "sessionId": body["id"],
        "scenarioId": scenario_id,
    }))
    return JSONResponse(body, status_code=201)


@router.get("/api/sessions/{session_id}", tags=["sessions"], description="Session detail.")
def sessions_get(request: Request, session_id: str):
    include_messages = _query_bool(request, "include_messages")
    with request.app.state.session_factory() as db:
        session = get_session(db, session_id)
        body = session_to_dict(session)
        if include_messages:
            body["messages"] = [m.to_dict() for m in all_messages(db, session.id)]
    return body


@router.get(
    "/api/sessions/{session_id}/messages",
    tags=["messages"],
    description="Paginated message history ordered by send time.",
)
def messages_list(request: Request, session_id: str):
    channel = request.query_params.get("chat_type") or "all"
    limit = _query_int(request, "limit", DEFAULT_PAGE_LIMIT)
    offset = _query_int(request, "offset", 0)
    order = (request.query_params.get("order") or "asc").lower()
    with request.app.state.session_factory() as db:
        get_session(db, session_id)
        items, total = list_messages(db, session_id, channel=channel, limit=limit, offset=offset, order=order)
        return page_to_dict(items, total, limit, offset)


@router.post(
    "/api/sessions/{session_id}/messages",
    tags=["messages"],
    description="Submit a message to one chat and receive the assistant's reply. Replays are idempotent per client_message_id.",
)
async def messages_submit(request: Request, session_id: str):
    payload = await _json_body(request)
    orchestrator: MessageOrchestrator = request.app.state.orchestrator
    outcome = await orchestrator.submit(
        session_id,
        payload.get("chat_type"),
        payload.get("content"),
        client_token=payload.get("client_message_id"),
        request_id=_request_id(request),
    )
    return JSONResponse(outcome.to_dict(), status_code=200 if outcome.replayed else 201)


@router.post("/api/sessions/{session_id}/complete", tags=["sessions"], description="Explicitly complete a session.")
def sessions_complete(request: Request, session_id: str):
    orchestrator: MessageOrchestrator = request.app.state.orchestrator
    session = orchestrator.complete(session_id)
    return session_to_dict(session)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    client: Optional[GenerationClient] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> FastAPI:
    """Build the API. `engine`, `client` and `sleep` are injection points for tests."""
    settings = settings or load_settings()
    _configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        eng = engine or build_engine(settings.database_url, settings.db_echo)
        init_db(eng)
        factory = build_session_factory(eng)
        if settings.seed_scenarios:
            with factory() as db:
                seed_default_scenarios(db)
        gen_client = client or get_generation_client()
        gateway = (
            GenerationGateway(gen_client, settings.retry, sleep=sleep)
            if sleep
            else GenerationGateway(gen_client, settings.retry)
        )
        app.state.engine = eng
        app.state.session_factory = factory
        app.state.orchestrator = MessageOrchestrator(factory, gateway, settings)
        logger.info(json.dumps({
            "event": "startup",
            "provider": gen_client.provider_name,
            "model": gen_client.model,
            "dialect": eng.dialect.name,
            "maxAttempts": settings.retry.max_attempts,
        }))
        try:
            yield
        finally:
            if engine is None:
                eng.dispose()

    app = FastAPI(
        title="Maraum Chat API",
        description="Dual-chat German practice sessions: scenario roleplay plus a sarcastic helper.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_exception_handler(MaraumError, _maraum_error_handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
        allow_credentials=False,
    )
    app.add_middleware(RequestIdMiddleware)
    app.middleware("http")(_http_metrics_middleware)
    app.include_router(router)
    return app


app = create_app()
