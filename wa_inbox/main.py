"""FastAPI application wiring for the WhatsApp inbox.

This module bootstraps the HTTP API:

- Configures logging, CORS (optional for the agent UI), Prometheus metrics
  and rate limiting.
- Serves uploaded media and mounts the conversation, campaign, webhook and
  upload routers.
- Translates domain errors into ``{error, code, details}`` JSON bodies with
  the status code each error carries.
- Optionally applies database migrations at startup (``RUN_MIGRATIONS``).
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .campaigns.runner import reset_runner
from .core import db
from .core.config import get_settings
from .core.errors import MessagingError
from .core.ratelimit import limiter
from .routers import campaigns, conversations, media, webhooks

load_dotenv()

logger = logging.getLogger(__name__)

UPLOAD_DIR = get_settings().upload_dir
os.makedirs(UPLOAD_DIR, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.getenv("RUN_MIGRATIONS", "false").lower() == "true":
        with db.transaction() as conn:
            applied = db.run_migrations(conn)
        if applied:
            logger.info("Applied migrations: %s", ", ".join(applied))
    yield
    reset_runner()


app = FastAPI(lifespan=lifespan)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
# Optional CORS for the agent UI
admin_ui_origins = os.getenv("ADMIN_UI_ORIGINS")
if admin_ui_origins:
    origins = [o.strip() for o in admin_ui_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")
app.include_router(conversations.router)
app.include_router(campaigns.router)
app.include_router(webhooks.router)
app.include_router(media.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    """Render domain errors as ``{error, code, details}``."""
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code, content=jsonable_encoder(exc.to_payload())
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder(
            {
                "error": "Invalid request",
                "code": "VALIDATION_ERROR",
                "details": exc.errors(),
            }
        ),
    )


@app.get("/api/health")
async def health():
    """Liveness/readiness probe with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
