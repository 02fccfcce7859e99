import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from app.config import settings
from app.core.logging import setup_logging
from app.core.exceptions import (
    APIError, StoreUnavailable,
    api_exception_handler, general_exception_handler, store_unavailable_handler
)
from app.core.middleware import (
    correlation_id_middleware, session_validation_middleware, request_logging_middleware
)

# Initialize logging
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown"""
    from app.database import DatabasePool
    from app.services.invite_service import get_invite_service
    from app.tasks.rollout import run_rollout_loop

    # Startup: build the invite service (fails fast on a missing pepper in production)
    service = get_invite_service()
    rollout_task = asyncio.create_task(run_rollout_loop(service))

    yield

    # Shutdown: Cancel background task and close the pool
    rollout_task.cancel()
    try:
        await rollout_task
    except asyncio.CancelledError:
        pass
    await DatabasePool.close_pool()


app = FastAPI(
    title="Property Invites API",
    description="API de invitaciones tokenizadas para vincular inquilinos a propiedades",
    version="1.0.0",
    debug=settings.debug,
    docs_url="/docs",
    lifespan=lifespan
)


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title="Property Invites API",
        version="1.0.0",
        description="API de invitaciones tokenizadas para vincular inquilinos a propiedades",
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "cookieAuth": {
            "type": "apiKey",
            "in": "cookie",
            "name": "session-token"
        },
        "rolloutKey": {
            "type": "apiKey",
            "in": "header",
            "name": "X-Rollout-Key"
        }
    }

    # Endpoints that require a session
    session_paths = ["/invites", "/invites/property", "/invites/accept", "/invites/revoke"]

    for path in openapi_schema["paths"]:
        for method in openapi_schema["paths"][path]:
            if method not in ["get", "post", "put", "delete", "patch"]:
                continue
            if path.startswith("/rollout") and (method == "put" or path.endswith("/metrics")):
                openapi_schema["paths"][path][method]["security"] = [{"rolloutKey": []}]
            elif any(path == p or path.startswith(p + "/") for p in session_paths):
                openapi_schema["paths"][path][method]["security"] = [{"cookieAuth": []}]

    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi

# Exception handlers
app.add_exception_handler(APIError, api_exception_handler)
app.add_exception_handler(StoreUnavailable, store_unavailable_handler)
app.add_exception_handler(Exception, general_exception_handler)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After", "X-Correlation-ID"],
)

# Custom middleware (order matters - first added runs last)
# Execution order: correlation_id → session_validation → logging
app.middleware("http")(request_logging_middleware)   # runs last
app.middleware("http")(session_validation_middleware) # runs second
app.middleware("http")(correlation_id_middleware)     # runs first

# Import and include routers
from app.routers import invites, rollout

# Property invites (issue/list/accept/revoke require a session, validate/events are public)
app.include_router(invites.router, prefix="/invites", tags=["invites"])

# Rollout flag (reads are public, writes require X-Rollout-Key)
app.include_router(rollout.router, prefix="/rollout", tags=["rollout"])


@app.get("/")
async def root():
    return {
        "service": "Property Invites API",
        "version": "1.0.0",
        "environment": settings.app_env,
        "store": settings.invite_store_backend
    }

@app.get("/health")
async def health():
    from app.database import check_database

    database = "disabled"
    if settings.invite_store_backend == "postgres":
        database = await check_database()
    return {
        "status": "healthy" if database != "unavailable" else "degraded",
        "database": database,
        "store": settings.invite_store_backend
    }


# Auto-start server if run directly
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
