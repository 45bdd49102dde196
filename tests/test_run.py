from __future__ import annotations

from snapsplit.backend import run


class TestRunner:
    def test_serves_app_with_settings_defaults(self, monkeypatch):
        calls = []
        monkeypatch.setattr(run.uvicorn, "run", lambda app, **kw: calls.append((app, kw)))

        assert run.main([]) == 0

        app, kw = calls[0]
        assert app == "snapsplit.backend.main:app"
        assert kw["host"] == run.settings.SNAPSPLIT_HOST
        assert kw["port"] == run.settings.SNAPSPLIT_PORT
        assert kw["reload"] is False

    def test_command_line_overrides(self, monkeypatch):
        calls = []
        monkeypatch.setattr(run.uvicorn, "run", lambda app, **kw: calls.append(kw))

        run.main(["--host", "127.0.0.1", "--port", "9001", "--reload"])

        assert calls == [{"host": "127.0.0.1", "port": 9001, "reload": True, "log_level": "info"}]
