import importlib
import os

import pytest

import near_workload.__main__ as cli
import near_workload.app as app_module
import near_workload.logging_config as logging_config
from near_workload.config import cfg


@pytest.fixture
def levels(monkeypatch):
    """Record logging setup instead of reconfiguring the test run."""
    seen = []
    monkeypatch.setattr(cli, "setup_logging", seen.append)
    monkeypatch.setattr(logging_config, "setup_logging", seen.append)
    monkeypatch.setitem(cfg["rpc"], "url", cfg["rpc"]["url"])
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    return seen


def test_serve_passes_options_to_service(monkeypatch, levels):
    calls = []
    monkeypatch.setattr(cli.uvicorn, "run", lambda target, **kw: calls.append((target, kw)))

    rc = cli.main(["--rpc-url", "http://node:3031", "--log-level", "debug", "serve", "--port", "9001"])

    assert rc == 0
    assert calls == [("near_workload.app:app", {"host": cfg["service"].get("host", "0.0.0.0"),
                                                 "port": 9001, "lifespan": "on"})]
    assert cfg["rpc"]["url"] == "http://node:3031"
    assert os.environ["LOG_LEVEL"] == "debug"
    assert levels == ["debug"]


def test_serve_without_log_level_leaves_env(monkeypatch, levels):
    monkeypatch.setattr(cli.uvicorn, "run", lambda target, **kw: None)

    assert cli.main(["serve"]) == 0
    assert "LOG_LEVEL" not in os.environ


def test_app_module_uses_requested_level(monkeypatch, levels):
    monkeypatch.setenv("LOG_LEVEL", "warning")

    importlib.reload(app_module)

    assert levels == ["warning"]


def test_config_error_exit_code(tmp_path, levels, capsys):
    rc = cli.main(["benchmark-native-transfers", "--user-data-dir", str(tmp_path / "nope"), "--num-transfers", "1"])

    assert rc == 1
    assert "is not a directory" in capsys.readouterr().err
