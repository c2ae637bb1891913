"""FastAPI application: routers, middleware and error mapping."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api import auth, generations, health, usage, webhooks
from src.config import get_settings
from src.db.session import init_db
from src.middleware.rate_limit import limiter
from src.services.errors import ServiceError

settings = get_settings()

SERVICE_NAME = "Media Credits Service"
VERSION = "1.0.0"


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {SERVICE_NAME} ({settings.app_env})")
    try:
        await init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise
    logger.info(
        f"Dispatch limits: music concurrency={settings.music_concurrency_limit} "
        f"rate={settings.music_rate_limit_max_requests}/{settings.music_rate_limit_window_ms}ms, "
        f"video concurrency={settings.video_concurrency_limit}"
    )

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")


app = FastAPI(
    title=SERVICE_NAME,
    description="""
## Metered AI media generation

Turns short user texts (subjects) into generated music and video through
third-party providers that report back over webhooks.

- **Credits**: each subscription tier grants a number of generation credits
  per period. Music costs 1 credit, video 3. Failed generations are refunded.
- **Queueing**: requests wait in a per-provider queue and are submitted under
  the provider's concurrency and rate limits.

### Authentication
`/v1` endpoints other than `/v1/plans` and `/v1/info` take an API key,
either as `Authorization: Bearer gk_...` or in `X-API-Key`.
    """,
    version=VERSION,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    log = logger.error if exc.http_status >= 500 else logger.info
    log(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled exception on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


for module in (health, generations, usage, webhooks, auth):
    app.include_router(module.router)


@app.get("/", tags=["Root"])
async def root():
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
