import asyncio
import os

import pytest

# Force fast / deterministic test environment
os.environ.setdefault("PLAYWRIGHT_MOCK_MODE", "1")  # avoid real browser in tests
os.environ.setdefault("SQLITE_PATH", "test_harvester.sqlite3")
os.environ.setdefault("FAILURE_LOG", "test_failures.log")


@pytest.fixture(autouse=True)
def isolated_paths(tmp_path, monkeypatch):
    """Every test gets its own database, export dir and failure log."""
    monkeypatch.setenv("SQLITE_PATH", str(tmp_path / "harvester.sqlite3"))
    monkeypatch.setenv("EXPORT_DIR", str(tmp_path / "exports"))
    monkeypatch.setenv("FAILURE_LOG", str(tmp_path / "failures.log"))
    monkeypatch.setenv("STORAGE_STATE", str(tmp_path / "storage_state.json"))
    from harvester.bootstrap import reset_context

    reset_context()
    yield
    reset_context()


@pytest.fixture
def settings(tmp_path):
    from harvester.bootstrap import Settings

    # Rely on field population by name (populate_by_name=True in config)
    return Settings(
        playwright_mock_mode=True,
        sqlite_path=str(tmp_path / "harvester.sqlite3"),
        export_dir=str(tmp_path / "exports"),
        mock_batch_size=12,
        mock_max_cards=24,
    )


@pytest.fixture
def no_sleep():
    """Drop-in for asyncio.sleep that only yields to the loop."""

    async def _sleep(_seconds: float) -> None:
        await asyncio.sleep(0)

    return _sleep


# Session overrides that remove every wait from a collection round
FAST_OVERRIDES = {
    "interval_ms": 0,
    "interval_jitter_ms": 0,
    "scroll_duration_min_ms": 0,
    "scroll_duration_max_ms": 0,
    "readiness_settle_ms": 0,
    "readiness_max_wait_ms": 0,
    "fault_backoff_ms": 0,
}


@pytest.fixture
def fast_overrides():
    return dict(FAST_OVERRIDES)


@pytest.fixture
def fast_config():
    from harvester.models import SessionConfig

    def _make(**overrides):
        values = dict(FAST_OVERRIDES)
        values.update(overrides)
        return SessionConfig(**values)

    return _make
