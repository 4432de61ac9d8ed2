import importlib
from pathlib import Path

import pytest
from typer.testing import CliRunner

from baton.session import FileSessionStore, Session

cli_module = importlib.import_module("baton.cli")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("BATON_MODEL", raising=False)
    sessions_dir = tmp_path / "sessions"
    monkeypatch.setenv("BATON_SESSIONS_DIR", str(sessions_dir))
    return sessions_dir


def test_run_prints_final_output(monkeypatch, responses, scripted_provider) -> None:
    provider = scripted_provider(responses.text("Hello from baton"))
    monkeypatch.setattr(cli_module, "_build_provider", lambda settings: provider)

    result = CliRunner().invoke(cli_module.app, ["run", "hi", "--instructions", "Be terse."])

    assert result.exit_code == 0, result.output
    assert "Hello from baton" in result.output
    assert provider.calls[0]["messages"][0] == {"role": "system", "content": "Be terse."}


def test_run_stream_renders_events(monkeypatch, responses, scripted_provider) -> None:
    provider = scripted_provider(responses.call("missing"), responses.text("Recovered"))
    monkeypatch.setattr(cli_module, "_build_provider", lambda settings: provider)

    result = CliRunner().invoke(cli_module.app, ["run", "hi", "--stream"])

    assert result.exit_code == 0, result.output
    assert "missing failed" in result.output
    assert "Recovered" in result.output
    assert "turns=2" in result.output


def test_run_without_model_fails_cleanly() -> None:
    result = CliRunner().invoke(cli_module.app, ["run", "hi"])
    assert result.exit_code == 1
    assert "Model not configured" in result.output


def test_run_with_bad_model_format_fails_cleanly() -> None:
    result = CliRunner().invoke(cli_module.app, ["run", "hi", "--model", "gpt-4o"])
    assert result.exit_code == 1
    assert "provider:model" in result.output


def test_run_with_session_persists_history(monkeypatch, responses, scripted_provider, _isolated_env: Path) -> None:
    provider = scripted_provider(responses.text("noted"))
    monkeypatch.setattr(cli_module, "_build_provider", lambda settings: provider)

    result = CliRunner().invoke(cli_module.app, ["run", "remember me", "--session", "s1"])

    assert result.exit_code == 0, result.output
    session = FileSessionStore(_isolated_env).retrieve("s1")
    assert session is not None
    assert session.message_count == 2


def test_sessions_commands(_isolated_env: Path) -> None:
    store = FileSessionStore(_isolated_env)
    session = Session(id="demo")
    session.add_message("user", "hello there")
    store.store(session)
    runner = CliRunner()

    listed = runner.invoke(cli_module.app, ["sessions", "list"])
    assert listed.exit_code == 0
    assert "demo" in listed.output

    shown = runner.invoke(cli_module.app, ["sessions", "show", "demo"])
    assert shown.exit_code == 0
    assert "hello there" in shown.output

    deleted = runner.invoke(cli_module.app, ["sessions", "delete", "demo"])
    assert deleted.exit_code == 0
    assert not store.exists("demo")

    missing = runner.invoke(cli_module.app, ["sessions", "show", "demo"])
    assert missing.exit_code == 1
    assert "Session not found" in missing.output
