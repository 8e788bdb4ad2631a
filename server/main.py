"""FastAPI application entrypoint.

Responsibilities:
- Create the FastAPI app with lifespan context
- Attach middleware: request id binding for structlog, basic security headers
- Include the command / data routes

Notes:
- Logging is configured by harvester.bootstrap when the context is created.
- The harvest service is built in lifespan and closed (session stopped, browser
  closed) on shutdown.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from structlog import contextvars as struct_contextvars

from harvester import __version__
from harvester.bootstrap import get_context

from .routes import get_service, router as core_router, set_service


# ------------------------------------------------------------
# Lifespan: initialize global context once app starts
# ------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # noqa: D401
    ctx = await get_context()
    service = await get_service()
    log_method = ctx.logger.debug if ctx.settings.quiet_startup else ctx.logger.info
    log_method("api_startup", mock_mode=ctx.settings.playwright_mock_mode, saved_session=ctx.has_saved_session())
    try:
        yield
    finally:
        await service.close()
        set_service(None)
        ctx.logger.info("api_shutdown")


app = FastAPI(title="Feed Harvester", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------------------------------------------
# Basic middleware
# ------------------------------------------------------------
@app.middleware("http")
async def request_context(request: Request, call_next):  # noqa: D401
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    struct_contextvars.bind_contextvars(request_id=rid, path=request.url.path)
    try:
        response: Response = await call_next(request)
    finally:
        struct_contextvars.clear_contextvars()
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("X-Request-ID", rid)
    return response


# ------------------------------------------------------------
# Include routes
# ------------------------------------------------------------
app.include_router(core_router)
