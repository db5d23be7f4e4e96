from __future__ import annotations

import pytest

from claudelink.errors import ConfigError
from claudelink.logging import log_pipeline, pipeline_trace_enabled, setup_logging
from claudelink.settings import ClaudeLinkSettings, load_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "CLAUDELINK__CLI_PATH",
        "CLAUDE_BINARY",
        "CLAUDELINK__CONTROL_TIMEOUT",
        "CLAUDELINK__INIT_TIMEOUT",
        "CLAUDELINK__CLOSE_GRACE_PERIOD",
        "CLAUDELINK__TRACE_PIPELINE",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = load_settings()

    assert settings.cli_path is None
    assert settings.control_timeout == 60.0
    assert settings.init_timeout == 60.0
    assert settings.close_grace_period == 5.0
    assert settings.trace_pipeline is False


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDELINK__CLI_PATH", "/opt/claude/bin/claude")
    monkeypatch.setenv("CLAUDELINK__CONTROL_TIMEOUT", "12.5")
    monkeypatch.setenv("CLAUDELINK__TRACE_PIPELINE", "true")

    settings = load_settings()

    assert settings.cli_path == "/opt/claude/bin/claude"
    assert settings.control_timeout == 12.5
    assert settings.trace_pipeline is True


def test_claude_binary_alias(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDE_BINARY", "/usr/local/bin/claude")

    assert load_settings().cli_path == "/usr/local/bin/claude"


def test_invalid_env_raises_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDELINK__INIT_TIMEOUT", "-1")

    with pytest.raises(ConfigError, match="CLAUDELINK__"):
        load_settings()


def test_init_by_field_name() -> None:
    assert ClaudeLinkSettings(cli_path="claude-beta").cli_path == "claude-beta"


def test_pipeline_trace_promotes_to_info(monkeypatch: pytest.MonkeyPatch) -> None:
    class _Recorder:
        def __init__(self) -> None:
            self.calls: list[tuple[str, str]] = []

        def info(self, event: str, **fields: object) -> None:
            self.calls.append(("info", event))

        def debug(self, event: str, **fields: object) -> None:
            self.calls.append(("debug", event))

    recorder = _Recorder()
    setup_logging(debug=True, json_logs=True, trace_pipeline=False)
    log_pipeline(recorder, "jsonl.received", type="assistant")
    setup_logging(debug=True, json_logs=True, trace_pipeline=True)
    log_pipeline(recorder, "jsonl.received", type="assistant")

    assert pipeline_trace_enabled()
    assert recorder.calls == [("debug", "jsonl.received"), ("info", "jsonl.received")]
    setup_logging(trace_pipeline=False)
