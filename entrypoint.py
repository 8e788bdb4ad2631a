"""Unified launcher entrypoint.

Behavior:
 - Loads .env through the Settings class (pydantic-settings).
 - Starts the FastAPI server; collection sessions are then driven through the API.
 - With HARVEST_AUTOSTART=1 a session is started right away with the saved settings.
 - Respects APP_HOST / APP_PORT and the LOG_* settings.
 - Test shortcut: set ENTRYPOINT_TEST_MODE=1 to skip launching anything (used in unit tests).

Usage (source):
  python entrypoint.py
"""
from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import structlog  # noqa: E402

from harvester.bootstrap import Settings, configure_logging  # noqa: E402

logger = structlog.get_logger("entrypoint")


async def _autostart(delay_s: float = 1.0) -> None:
    # Wait for the lifespan to build the service before issuing the command
    await asyncio.sleep(delay_s)
    from server.routes import get_service

    try:
        service = await get_service()
        result = await service.start()
    except Exception as exc:  # noqa: BLE001 - the API stays up even if autostart fails
        logger.error("autostart_failed", error=str(exc))
        return
    logger.info("autostart", success=result.success, error=result.error)


async def _run_server(settings: Settings) -> None:
    import uvicorn

    config = uvicorn.Config(
        "server.main:app",
        host=settings.app_host,
        port=settings.app_port,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    await server.serve()


async def main() -> None:
    settings = Settings()
    configure_logging(settings.log_level, settings)
    if os.environ.get("ENTRYPOINT_TEST_MODE") == "1":
        logger.info("entrypoint_test_mode", detail="skipping launch")
        return
    logger.info("entrypoint_starting", host=settings.app_host, port=settings.app_port)
    server_task = asyncio.create_task(_run_server(settings), name="uvicorn_server")
    autostart = None
    if os.environ.get("HARVEST_AUTOSTART") == "1":
        autostart = asyncio.create_task(_autostart(), name="harvest_autostart")
    try:
        await server_task
    finally:
        if autostart is not None and not autostart.done():
            autostart.cancel()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n[entrypoint] Interrupted")
