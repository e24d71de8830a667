from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from access_engine.core import config
from access_engine.core.database.engine import init_db
from access_engine.core.exception_handlers import register_exception_handlers
from access_engine.features.assignments.routes import role_permission_router, user_permission_router
from access_engine.features.audit.routes import router as audit_router
from access_engine.features.bulk.routes import router as bulk_router
from access_engine.features.permissions.routes import router as permission_router, role_router
from access_engine.features.resolution.routes import router as access_router
from access_engine.features.users.dependencies import get_authorization_header
from access_engine.utils import get_logger


VERSION = "0.1.0"

log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Access Engine",
    description="Permission catalog, role and user grants, and permission resolution",
    version=VERSION,
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(
    key_func=get_authorization_header,
    default_limits=[config.RATE_LIMIT] if config.RATE_LIMIT else [],
)
app.state.limiter = limiter
if config.RATE_LIMIT:
    log.warning("Rate limiting every route to %s", config.RATE_LIMIT)
    app.add_middleware(SlowAPIMiddleware)


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.access_engine.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
if config.SUPERUSER_IDS:
    log.warning("Superusers configured: %s", ", ".join(sorted(config.SUPERUSER_IDS)))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


register_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Initialize database on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Access Engine API",
        "version": VERSION,
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": [
                "/permissions/*", "/roles/*", "/role-permissions/*", "/user-permissions/*",
                "/bulk/*", "/access/*", "/audit-logs"
            ],
            "public_endpoints": ["/", "/health"]
        },
        "features": {
            "permissions": "Catalog of permission codes by module, action and resource template",
            "roles": "Named roles carrying grant or deny edges",
            "user_permissions": "Per-user overrides that outrank every role",
            "bulk": "All-or-nothing assign, remove, sync and copy of edge sets",
            "access": "Permission checks and effective permission sets",
            "audit": "Who changed which permission, role or edge"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
app.include_router(role_router, prefix="/roles", tags=["roles"])

# Permission edges
app.include_router(role_permission_router, prefix="/role-permissions", tags=["role-permissions"])
app.include_router(user_permission_router, prefix="/user-permissions", tags=["user-permissions"])

# Bulk edge operations
app.include_router(bulk_router, prefix="/bulk", tags=["bulk"])

# Permission resolution
app.include_router(access_router, prefix="/access", tags=["access"])

# Audit trail
app.include_router(audit_router, prefix="/audit-logs", tags=["audit"])
