from __future__ import annotations

from pathlib import Path

import pytest

from etag_watch.api import server


def _write_config(tmp_path: Path, extra: str = "") -> Path:
    path = tmp_path / "watch.yaml"
    path.write_text(
        f"state:\n  path: {tmp_path / 'etag.json'}\nlogging:\n  directory: null\n{extra}",
        encoding="utf-8",
    )
    return path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("WATCH_CONFIG", "EMAIL_RECIPIENTS", "SMTP_MAIL", "SMTP_PASS", "EMAIL_FROM", "PORT", "HOST", "LOG_DIR"):
        monkeypatch.delenv(name, raising=False)


def test_invalid_config_exits_with_2(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "watch.yaml"
    path.write_text("probe: [broken", encoding="utf-8")
    monkeypatch.setattr(server.uvicorn, "run", lambda *a, **kw: pytest.fail("server must not start"))

    assert server.main(["--config", str(path)]) == 2


def test_missing_mail_credentials_refuse_to_start(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write_config(tmp_path, "email:\n  recipients: [ops@example.com]\n")
    monkeypatch.setattr(server.uvicorn, "run", lambda *a, **kw: pytest.fail("server must not start"))

    assert server.main(["--config", str(path)]) == 2


def test_cli_overrides_reach_uvicorn(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write_config(tmp_path)
    captured: dict = {}

    def fake_run(app, **kwargs) -> None:
        captured["app"] = app
        captured.update(kwargs)

    monkeypatch.setattr(server.uvicorn, "run", fake_run)

    assert server.main(["--config", str(path), "--host", "127.0.0.1", "--port", "9123", "--log-level", "debug"]) == 0
    assert captured["host"] == "127.0.0.1"
    assert captured["port"] == 9123
    assert captured["log_level"] == "debug"
    assert captured["app"].state.config.server.port == 9123
