"""
CLI entry point: flags reach the server that actually runs.
"""
import os

import pytest

from agentrelay import cli


@pytest.fixture
def captured_run(monkeypatch):
    calls = []
    monkeypatch.setattr(cli.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))
    # main() exports the workspace; let monkeypatch restore the caller's value.
    monkeypatch.delenv("AGENTRELAY_WORKSPACE_DIR", raising=False)
    return calls


def test_workspace_flag_reaches_the_served_app(captured_run, tmp_path):
    cli.main(["--workspace", str(tmp_path / "ws"), "--port", "9123"])

    (target, kwargs), = captured_run
    assert target.state.services.registry.workspace_dir == tmp_path / "ws"
    assert kwargs["port"] == 9123
    assert kwargs["reload"] is False
    assert os.environ["AGENTRELAY_WORKSPACE_DIR"] == str(tmp_path / "ws")


def test_reload_uses_import_string_and_env(captured_run, tmp_path):
    cli.main(["--workspace", str(tmp_path / "ws"), "--reload"])

    (target, kwargs), = captured_run
    assert target == "agentrelay.main:app"
    assert kwargs["reload"] is True
    assert os.environ["AGENTRELAY_WORKSPACE_DIR"] == str(tmp_path / "ws")
