"""Server CLI lifecycle smoke tests.

Runs the CLI entrypoint against minimal temporary config files; the uvicorn
run loop is patched out so no socket is opened.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from appmetrics.config.models import AppConfig
from appmetrics.server.cli import check_config, main


def _write_config(tmp_path: Path, **overrides) -> Path:
    fixture = tmp_path / "compute.json"
    fixture.write_text(json.dumps({"fn-a": {"invocations": []}}))
    cfg = {
        "admin_subjects": ["ops@example.com"],
        "applications": {"demo": {"functions": ["fn-a"]}},
        "connectors": {
            "compute": {"type": "fixture", "fixture_path": str(fixture)},
        },
    }
    cfg.update(overrides)
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text(json.dumps(cfg))
    return cfg_path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("APPMETRICS_CONFIG", raising=False)
    monkeypatch.delenv("APPMETRICS_HTTP_TOKEN", raising=False)
    monkeypatch.delenv("APPMETRICS_LOG_LEVEL", raising=False)


def test_check_valid_config(tmp_path: Path, capsys) -> None:
    cfg_path = _write_config(tmp_path)
    assert main(["--config", str(cfg_path), "--check"]) == 0
    out = capsys.readouterr()
    assert "configuration OK: 1 application(s), 1 connector(s)" in out.out
    assert "warning" not in out.err


def test_missing_config_exits_with_error(capsys) -> None:
    assert main(["--check"]) == 2
    assert "no configuration file given" in capsys.readouterr().err


def test_invalid_config_exits_with_error(tmp_path: Path, capsys) -> None:
    cfg_path = _write_config(tmp_path, admin_subjects=[])
    assert main(["--config", str(cfg_path), "--check"]) == 2
    assert "admin_subjects" in capsys.readouterr().err


def test_check_config_reports_problems(tmp_path: Path) -> None:
    config = AppConfig.model_validate(
        {
            "admin_subjects": ["ops@example.com"],
            "applications": {"demo": {"functions": ["fn-a"], "api_gateway": "api"}},
            "connectors": {
                "compute": {
                    "type": "fixture",
                    "fixture_path": str(tmp_path / "missing.json"),
                },
                "storage": {"type": "smoke-signals"},
            },
        }
    )
    problems = check_config(config)
    assert "connector for 'compute' is not configured" in problems
    assert any("unknown connector type 'smoke-signals'" in p for p in problems)
    assert "application 'demo' uses 'traffic' but no connector serves it" in problems


def test_serve_runs_uvicorn(tmp_path: Path) -> None:
    cfg_path = _write_config(tmp_path)
    with patch("appmetrics.server.cli.uvicorn.run") as run:
        assert main(["--config", str(cfg_path), "--port", "9099"]) == 0
    run.assert_called_once()
    _, kwargs = run.call_args
    assert kwargs["port"] == 9099
    assert kwargs["host"] == "127.0.0.1"
    assert kwargs["log_level"] == "info"
