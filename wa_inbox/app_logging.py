"""Application and access logging setup.

This module centralizes logging configuration for the messaging API:

- A simple JSON formatter (opt-in via LOG_JSON) or a human-readable formatter.
- Timed rotation of ``app.log`` and ``access.log`` honoring retention and
  timezone options.
- An HTTP middleware that records one access line per request with a
  correlation id. Provider webhooks are form-encoded, so optional body
  logging understands both JSON and ``application/x-www-form-urlencoded``
  payloads and scrubs credentials and provider signatures from either.
- Per-job log files for campaign dispatch jobs.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, cast
from urllib.parse import parse_qsl
from uuid import uuid4

from fastapi import FastAPI, Request

APP_LOGGER_NAME = "wa_inbox"


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - simple
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "password",
    "token",
    "access_token",
    "x-twilio-signature",
    "accountsid",
    "auth_token",
}


def _scrub(data: object) -> object:
    """Recursively scrub sensitive fields from dictionaries and lists."""

    if isinstance(data, dict):
        return {
            k: ("***" if k.lower() in SENSITIVE_FIELDS else _scrub(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_scrub(v) for v in data]
    return data


def _decode_body(body_bytes: bytes, content_type: str) -> object:
    if content_type.startswith("application/x-www-form-urlencoded"):
        text = body_bytes.decode("utf-8", errors="replace")
        return _scrub(dict(parse_qsl(text, keep_blank_values=True)))
    try:
        return _scrub(json.loads(body_bytes))
    except ValueError:
        return body_bytes.decode("utf-8", errors="replace")


def _install_access_logging(app: FastAPI) -> None:
    """Install request/response access logging middleware."""

    log_request_bodies = os.getenv("LOG_REQUEST_BODIES", "false").lower() == "true"
    skip_paths = {"/api/health", "/api/metrics"}
    access_logger = logging.getLogger("uvicorn.access")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in skip_paths:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        start = time.time()

        body_content = None
        if log_request_bodies:
            body_bytes = await request.body()

            async def receive() -> dict:  # pragma: no cover - internal
                return {"type": "http.request", "body": body_bytes, "more_body": False}

            request._receive = receive  # type: ignore[attr-defined]
            if body_bytes:
                body_content = _decode_body(
                    body_bytes, request.headers.get("content-type", "")
                )

        response = await call_next(request)

        client_ip = request.headers.get("X-Forwarded-For")
        if not client_ip and request.client is not None:
            client_ip = request.client.host

        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.time() - start) * 1000, 2),
            "client_ip": client_ip,
            "headers": _scrub(dict(request.headers)),
        }
        if body_content is not None:
            log_data["body"] = body_content

        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(log_data, default=str))
        return response


def _rotating_handler(path: str, formatter: logging.Formatter) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=int(os.getenv("LOG_RETENTION_DAYS", "7")),
        utc=os.getenv("LOG_ROTATE_UTC", "false").lower() == "true",
    )
    handler.setFormatter(formatter)
    return handler


def init_logging(app: FastAPI | None = None) -> None:
    """Initialise application and access loggers."""

    log_dir = os.getenv("LOG_DIR", "logs")
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    formatter = _get_formatter(os.getenv("LOG_JSON", "false").lower() == "true")
    log_level = getattr(logging, log_level_str, logging.INFO)

    os.makedirs(log_dir, exist_ok=True)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if not app_logger.handlers:
        app_logger.addHandler(_rotating_handler(os.path.join(log_dir, "app.log"), formatter))
    app_logger.setLevel(log_level)

    access_logger = logging.getLogger("uvicorn.access")
    access_logger.handlers.clear()
    access_logger.addHandler(
        _rotating_handler(os.path.join(log_dir, "access.log"), formatter)
    )
    access_logger.setLevel(log_level)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app)


def setup_job_logging(job_id: object) -> tuple[logging.Logger, Path]:
    """Create a dedicated logger + file for a dispatch job and return them."""

    log_dir = Path(os.getenv("LOG_DIR", "logs")) / "jobs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{job_id}.log"
    logger = logging.getLogger(f"{APP_LOGGER_NAME}.jobs.{job_id}")
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(_get_formatter(os.getenv("LOG_JSON", "false").lower() == "true"))
        logger.addHandler(handler)
    return logger, log_path


def close_job_logging(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
