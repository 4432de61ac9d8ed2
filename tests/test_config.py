from pathlib import Path

import pytest

from baton.config import Settings, load_settings
from baton.errors import ConfigurationError
from baton.runner import RunConfig


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for key in ("BATON_MODEL", "BATON_MAX_TURNS", "BATON_API_KEY", "BATON_CONTINUATION_MERGE_STRATEGY"):
        monkeypatch.delenv(key, raising=False)


def test_defaults() -> None:
    settings = Settings()
    assert settings.model is None
    assert settings.max_tokens == 4000
    assert settings.max_turns == 10
    assert settings.continuation_enabled is True
    assert settings.continuation_max_attempts == 3
    assert settings.continuation_merge_strategy == "concatenate"


def test_environment_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BATON_MODEL", "openrouter:qwen/qwen3")
    monkeypatch.setenv("BATON_MAX_TURNS", "4")
    settings = Settings()
    assert settings.model == "openrouter:qwen/qwen3"
    assert settings.max_turns == 4


def test_dotenv_file_is_read(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("BATON_API_KEY=sk-test\n", encoding="utf-8")
    assert Settings().api_key == "sk-test"


def test_blank_model_means_unset() -> None:
    assert Settings(model="  ").model is None


def test_load_settings_ignores_none_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BATON_MAX_TURNS", "7")
    assert load_settings(max_turns=None).max_turns == 7
    assert load_settings(max_turns=2).max_turns == 2


@pytest.mark.parametrize(
    "overrides",
    [{"model": "gpt-4o"}, {"max_turns": 0}, {"continuation_merge_strategy": "yaml"}],
)
def test_load_settings_wraps_validation_errors(overrides) -> None:
    with pytest.raises(ConfigurationError, match="Invalid Baton settings"):
        load_settings(**overrides)


def test_run_config_from_settings() -> None:
    settings = Settings(max_turns=3, continuation_max_attempts=2, continuation_merge_strategy="json")
    config = RunConfig.from_settings(settings, model="openai:x")
    assert config.max_turns == 3
    assert config.continuation_max_attempts == 2
    assert config.merge_strategy == "json"
    assert config.model == "openai:x"
