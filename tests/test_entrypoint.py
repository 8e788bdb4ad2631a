import asyncio
import importlib

# Lightweight test: ensure entrypoint loads and honors test mode without launching uvicorn.


async def _call_main():
    mod = importlib.import_module('entrypoint')
    if hasattr(mod, 'main'):
        await mod.main()  # type: ignore
    else:  # pragma: no cover
        raise AssertionError('entrypoint.main missing')


def test_entrypoint_test_mode(monkeypatch):
    monkeypatch.setenv('ENTRYPOINT_TEST_MODE', '1')
    asyncio.run(_call_main())
