"""FastAPI main application: entity pool and exploration progress engine."""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api import (
    entity_pool as entity_pool_api,
    exploration_actions as exploration_api,
    location_entity_mapping as mapping_api,
    milestones as milestones_api,
    player_experience as player_experience_api,
)
from backend.app.config import DEFAULT_DB_PATH, _log_resolved_config
from backend.app.core.action_catalog import get_action_catalog
from backend.app.core.error_handling import (
    DatabaseError,
    EngineError,
    create_error_response,
    create_success_response,
    log_error_with_context,
)
from backend.app.db.migrate import apply_schema
from shared.config import _env_flag

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


def _parse_cors_allowlist(raw: str) -> list[str]:
    origins = [o.strip() for o in raw.split(",") if o and o.strip()]
    if origins:
        return origins
    return [
        "http://localhost",
        "http://127.0.0.1",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


DEV_MODE = _env_flag("ENGINE_DEV_MODE", default=True)
CORS_ALLOW_ORIGINS = _parse_cors_allowlist(os.environ.get("ENGINE_CORS_ALLOW_ORIGINS", ""))


def _node_for_path(path: str) -> str:
    for prefix, node in (
        ("/entity-pool", "entity_pool"),
        ("/location-entity-mapping", "location_mapping"),
        ("/exploration", "exploration"),
        ("/milestones", "milestones"),
        ("/player-experience", "player_experience"),
    ):
        if path.startswith(prefix):
            return node
    return "api"


def _request_context(request: Request) -> dict:
    params = getattr(request, "path_params", {}) or {}
    return {
        "session_id": params.get("session_id") or request.query_params.get("session_id"),
        "execution_id": params.get("execution_id"),
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not DEV_MODE and "*" in CORS_ALLOW_ORIGINS:
        raise RuntimeError(
            "Unsafe CORS config: '*' is only allowed in dev mode. "
            "Set ENGINE_CORS_ALLOW_ORIGINS to explicit origins."
        )
    applied = apply_schema(DEFAULT_DB_PATH)
    catalog = get_action_catalog()
    _log_resolved_config()
    logger.info(
        "API startup complete (dev_mode=%s, db=%s, migrations applied=%d, action types=%d)",
        DEV_MODE,
        DEFAULT_DB_PATH,
        len(applied),
        len(catalog.action_types),
    )
    yield


app = FastAPI(title="Entity Pool & Exploration Engine API", version=API_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    """Map the engine's error taxonomy onto status codes and the error envelope."""
    node = _node_for_path(request.url.path)
    if exc.status_code >= 500:
        log_error_with_context(
            error=exc.cause if isinstance(exc, DatabaseError) and exc.cause else exc,
            node_name=node,
            operation=request.url.path,
            extra_context={"method": request.method, "details": exc.details},
            **_request_context(request),
        )
        # Persistence internals stay in the log
        error_response = create_error_response(
            error_code=exc.error_code,
            message="A storage error occurred" if isinstance(exc, DatabaseError) else exc.message,
            node=node,
        )
    else:
        logger.info("[%s] %s %s -> %s: %s", node, request.method, request.url.path, exc.error_code, exc.message)
        error_response = create_error_response(
            error_code=exc.error_code,
            message=exc.message,
            node=node,
            details=exc.details,
        )
    return JSONResponse(status_code=exc.status_code, content=error_response)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies/params are ValidationErrors (400) with a field -> problem map."""
    details = {}
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        details[loc or "request"] = err.get("msg", "invalid")
    error_response = create_error_response(
        error_code="VALIDATION_ERROR",
        message="Invalid request",
        node=_node_for_path(request.url.path),
        details=details,
    )
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=error_response)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTPExceptions with structured error responses."""
    node = _node_for_path(request.url.path)
    error_response = create_error_response(
        error_code=f"{node.upper()}_HTTP_{exc.status_code}",
        message=str(exc.detail),
        node=node,
        details={
            "status_code": exc.status_code,
            "path": request.url.path,
        },
    )
    return JSONResponse(status_code=exc.status_code, content=error_response)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler: log with full context, answer with a generic 500."""
    node = _node_for_path(request.url.path)

    log_error_with_context(
        error=exc,
        node_name=node,
        operation=request.url.path,
        extra_context={
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
        },
        **_request_context(request),
    )

    error_response = create_error_response(
        error_code=f"{node.upper()}_ERROR",
        message="An internal error occurred",
        node=node,
        details={"path": request.url.path},
    )
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error_response)


app.include_router(entity_pool_api.router)
app.include_router(mapping_api.router)
app.include_router(exploration_api.router)
app.include_router(milestones_api.router)
app.include_router(player_experience_api.router)


@app.get("/")
async def root():
    return create_success_response({"message": "Entity Pool & Exploration Engine API", "version": API_VERSION})


@app.get("/health")
async def health():
    return create_success_response({"status": "healthy"})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
