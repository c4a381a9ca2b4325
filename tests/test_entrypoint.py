import uvicorn

from partsync_bff import __main__ as entrypoint
from partsync_bff.config import settings


def test_main_serves_app_with_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(settings, "BFF_PORT", 8123)

    entrypoint.main()

    assert calls == [(
        "partsync_bff.main:app",
        {"host": "127.0.0.1", "port": 8123, "log_level": "info", "reload": False},
    )]
