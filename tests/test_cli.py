from __future__ import annotations

import json

from harvester.__main__ import main, parse_args
from harvester.mock import render_card


def _json_lines(text: str) -> list[dict]:
    out = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        obj = json.loads(line)
        if "event" not in obj:  # skip structlog lines
            out.append(obj)
    return out


def test_parse_run_arguments():
    args = parse_args(["run", "--max-scrolls", "7", "--speed", "8", "--no-smart-stop", "--export", "excel"])
    assert args.command == "run"
    assert args.max_scrolls == 7 and args.speed == 8
    assert args.no_smart_stop and args.export == "excel"


def test_out_of_range_speed_is_reported(capsys):
    # argparse accepts any int; the session layer validates the range
    assert main(["run", "--speed", "42"]) == 2
    assert "scroll speed" in capsys.readouterr().err


def test_replay_saved_page(tmp_path, capsys):
    page = tmp_path / "feed.html"
    page.write_text("<div class='feeds-page'>" + render_card(0) + render_card(1) + "</div>", encoding="utf-8")
    assert main(["replay", str(page), "--json"]) == 0
    captured = capsys.readouterr()
    records = [r for r in _json_lines(captured.out) if "url" in r]
    assert len(records) == 2
    assert records[0]["title"] == "周末探店 #0"
    assert "2 records" in captured.err


def test_export_with_nothing_stored(capsys):
    assert main(["export", "--format", "csv"]) == 2
    assert "nothing to export" in capsys.readouterr().err


def test_run_in_mock_mode_then_export(monkeypatch, capsys, tmp_path):
    for key, value in {
        "PLAYWRIGHT_MOCK_MODE": "1",
        "MOCK_MAX_CARDS": "16",
        "MOCK_BATCH_SIZE": "8",
        "INTERVAL_JITTER_MS": "0",
        "SCROLL_DURATION_MIN_MS": "0",
        "SCROLL_DURATION_MAX_MS": "0",
        "READINESS_SETTLE_MS": "0",
        "READINESS_MAX_WAIT_MS": "0",
    }.items():
        monkeypatch.setenv(key, value)
    code = main(["run", "--max-scrolls", "3", "--interval", "0", "--export", "json", "--timeout", "10"])
    assert code == 0
    out = capsys.readouterr().out
    status = [r for r in _json_lines(out) if "state" in r][-1]
    assert status["state"] == "stopped"
    assert status["record_count"] == 16
    assert "exported 16 records" in out
    assert list((tmp_path / "exports").glob("*.json"))


def test_login_saves_session(monkeypatch, capsys):
    import harvester.__main__ as cli

    calls = []

    class FakeSession:
        def __init__(self, settings):
            calls.append(("init", settings.playwright_headless, settings.playwright_mock_mode))

        async def open(self):
            calls.append(("open",))

        async def save_storage_state(self):
            calls.append(("save",))
            return True

        async def close(self):
            calls.append(("close",))

    monkeypatch.setattr(cli, "BrowserSession", FakeSession)
    assert main(["login", "--capture-after", "0"]) == 0
    assert calls == [("init", False, False), ("open",), ("save",), ("close",)]
    assert "session saved to" in capsys.readouterr().out
