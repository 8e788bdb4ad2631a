"""Command line interface.

Usage:
  python -m harvester run [--max-scrolls N] [--speed 1-10] [--interval SECONDS] [--no-smart-stop]
                          [--resume] [--export csv|json|excel] [--timeout SECONDS]
  python -m harvester replay page.html [--json]
  python -m harvester export --format csv|json|excel
  python -m harvester serve [--host H] [--port P]
  python -m harvester login [--capture-after SECONDS]
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Optional, Sequence

from .bootstrap import get_context
from .browser import BrowserSession
from .errors import HarvesterError
from .extractor import RecordExtractor
from .service import HarvestService
from .snapshot import SnapshotPage


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="harvester", description="Scroll-driven feed record harvester")
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Collect until a stop condition is met")
    run.add_argument("--max-scrolls", type=int, default=None)
    run.add_argument("--speed", type=int, default=None, help="Scroll speed 1-10 (5 = neutral)")
    run.add_argument("--interval", type=float, default=None, help="Seconds between scrolls")
    run.add_argument("--no-smart-stop", action="store_true")
    run.add_argument("--resume", action="store_true", help="Continue from previously stored records")
    run.add_argument("--export", choices=["csv", "json", "excel"], default=None)
    run.add_argument("--timeout", type=float, default=None, help="Stop after this many seconds")

    replay = sub.add_parser("replay", help="Extract records from a saved HTML page")
    replay.add_argument("path")
    replay.add_argument("--json", action="store_true", help="Print records as JSON lines")

    export = sub.add_parser("export", help="Export stored records")
    export.add_argument("--format", choices=["csv", "json", "excel"], default="csv")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    login = sub.add_parser("login", help="Log in by hand in a visible browser and save the session")
    login.add_argument("--capture-after", type=int, default=None, help="Save after N seconds instead of waiting for ENTER")
    return p.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if args.max_scrolls is not None:
        out["max_scrolls"] = args.max_scrolls
    if args.speed is not None:
        out["scroll_speed"] = args.speed
    if args.interval is not None:
        out["scrollInterval"] = args.interval
    if args.no_smart_stop:
        out["smart_stop_enabled"] = False
    return out


async def _run(args: argparse.Namespace) -> int:
    ctx = await get_context()
    service = HarvestService(ctx.settings)
    try:
        result = await service.start(_overrides(args), resume_previous=args.resume)
        if not result.success:
            print(f"start rejected: {result.error}", file=sys.stderr)
            return 1
        finished = await service.wait_stopped(args.timeout)
        if not finished:
            await service.stop()
        status = service.status()
        print(json.dumps(status, ensure_ascii=False))
        if args.export:
            exported = service.export(args.export)
            print(f"exported {exported.count} records to {exported.path}")
        return 0
    finally:
        await service.close()


async def _replay(args: argparse.Namespace) -> int:
    ctx = await get_context()
    page = SnapshotPage.from_file(args.path)
    records = await RecordExtractor.from_settings(ctx.settings).extract(page)
    for record in records:
        if args.json:
            print(json.dumps(record.to_dict(), ensure_ascii=False))
        else:
            print(f"{record.url}\t{record.title or ''}\t{record.author or ''}\t{record.likes if record.likes is not None else ''}")
    print(f"{len(records)} records", file=sys.stderr)
    return 0


async def _export(args: argparse.Namespace) -> int:
    ctx = await get_context()
    service = HarvestService(ctx.settings)
    exported = service.export(args.format)
    print(f"exported {exported.count} records to {exported.path}")
    return 0


async def _login(args: argparse.Namespace) -> int:
    ctx = await get_context()
    settings = ctx.settings.model_copy(update={"playwright_headless": False, "playwright_mock_mode": False})
    session = BrowserSession(settings)
    try:
        await session.open()
        if args.capture_after is not None:
            print(f"Saving the session in {args.capture_after}s...")
            await asyncio.sleep(args.capture_after)
        else:
            await asyncio.to_thread(input, "Log in in the browser window, then press ENTER to save the session... ")
        if not await session.save_storage_state():
            print("could not save the session", file=sys.stderr)
            return 1
        print(f"session saved to {settings.storage_state}")
        return 0
    finally:
        await session.close()


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .bootstrap import Settings

    settings = Settings()
    uvicorn.run(
        "server.main:app",
        host=args.host or settings.app_host,
        port=args.port or settings.app_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.command == "serve":
        return _serve(args)
    handlers = {"run": _run, "replay": _replay, "export": _export, "login": _login}
    try:
        return asyncio.run(handlers[args.command](args))
    except HarvesterError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\n[harvester] Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
