import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import appointments, availability, logs, tenants
from app.core.config import _ENV_FILE, settings
from app.core.db import create_directory_engine, create_session_maker, init_db
from app.core.exceptions import PlatformError
from app.core.tenant_db import TenantDatabaseRegistry
from app.services.audit_service import AuditDispatcher
from app.services.locks import KeyedLocks
from app.services.tenant_service import TenantDirectory

if not settings.is_production:
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.DEBUG))
else:
    logging.basicConfig(
        level=logging.INFO,
        format='{"time": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}',
    )
logger = logging.getLogger(__name__)


async def build_state(app: FastAPI, database_url: str | None = None) -> None:
    """Create the process-wide collaborators and hang them on app.state."""
    engine = create_directory_engine(database_url)
    await init_db(engine)
    registry = TenantDatabaseRegistry()
    app.state.directory_engine = engine
    app.state.registry = registry
    app.state.directory = TenantDirectory(create_session_maker(engine), registry)
    app.state.locks = KeyedLocks()
    app.state.dispatcher = AuditDispatcher()


async def close_state(app: FastAPI) -> None:
    await app.state.dispatcher.drain()
    await app.state.registry.close_all()
    await app.state.directory_engine.dispose()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Loading .env from: %s (exists: %s)", _ENV_FILE, _ENV_FILE.exists())
    await build_state(app)
    logger.info(
        "Tenant connections: pool %d+%d, connect timeout %.1fs, auto-create schema %s",
        settings.tenant_pool_size,
        settings.tenant_max_overflow,
        settings.tenant_connect_timeout_seconds,
        settings.tenant_auto_create_schema,
    )
    yield
    await close_state(app)


app = FastAPI(
    title="Practice Platform API",
    description="Multi-tenant scheduling core: tenants, doctor availability, appointments",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Tenant"],
)

app.include_router(tenants.router, prefix="/api/v1")
app.include_router(availability.router, prefix="/api/v1")
app.include_router(appointments.router, prefix="/api/v1")
app.include_router(logs.router, prefix="/api/v1")


def _cors_headers(origin: str | None) -> dict[str, str]:
    """Add CORS headers to error responses so the browser doesn't block them."""
    headers = {
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type, X-Tenant",
    }
    if origin and origin in settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = origin
    elif settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = settings.cors_origins_list[0]
    return headers


@app.exception_handler(PlatformError)
async def platform_exception_handler(request: Request, exc: PlatformError) -> JSONResponse:
    headers = _cors_headers(request.headers.get("origin"))
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    content: dict = {"detail": exc.message, "code": exc.code}
    if exc.details:
        content["details"] = exc.details
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "detail": [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()],
            "code": "validation_error",
        },
        headers=_cors_headers(request.headers.get("origin")),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return actual error in JSON; include CORS so 500 responses are not blocked by browser."""
    origin = request.headers.get("origin")
    headers = _cors_headers(origin)
    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=headers,
        )
    logger.exception("Unhandled exception: %s", exc)
    detail = "Internal server error" if settings.is_production else f"{type(exc).__name__}: {str(exc)}"
    return JSONResponse(
        status_code=500,
        content={"detail": detail},
        headers=headers,
    )


@app.get("/health")
async def health(request: Request) -> dict:
    registry: TenantDatabaseRegistry | None = getattr(request.app.state, "registry", None)
    return {"status": "ok", "tenant_connections": len(registry) if registry is not None else 0}
