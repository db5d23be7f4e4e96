from __future__ import annotations

from pathlib import Path

import pytest

from claudelink.errors import ConfigError
from claudelink.hooks import HookMatcher
from claudelink.options import (
    ClaudeLinkOptions,
    SystemPromptPreset,
    load_options,
    resolve_timeouts,
)
from claudelink.settings import ClaudeLinkSettings


def test_unknown_field_is_rejected() -> None:
    with pytest.raises(ConfigError):
        ClaudeLinkOptions(modle="opus")


def test_unknown_field_in_mapping_is_rejected() -> None:
    with pytest.raises(ConfigError):
        load_options({"permission_mode": "default", "allow_everything": True})


def test_invalid_permission_mode() -> None:
    with pytest.raises(ConfigError):
        ClaudeLinkOptions(permission_mode="yolo")


def test_unknown_hook_event() -> None:
    with pytest.raises(ConfigError):
        ClaudeLinkOptions(hooks={"BeforeEverything": [HookMatcher()]})


def test_hooks_must_be_matchers() -> None:
    with pytest.raises(ConfigError):
        ClaudeLinkOptions(hooks={"PreToolUse": [{"matcher": "Bash"}]})


def test_fallback_model_must_differ() -> None:
    with pytest.raises(ConfigError):
        ClaudeLinkOptions(model="opus", fallback_model="opus")


def test_callback_and_prompt_tool_are_exclusive() -> None:
    with pytest.raises(ConfigError):
        ClaudeLinkOptions(
            can_use_tool=lambda *_: None,
            permission_prompt_tool_name="mcp__approvals__prompt",
        )


def test_load_options_accepts_mapping() -> None:
    options = load_options({"cwd": "/repo", "model": " opus ", "max_turns": 2})

    assert options.cwd == Path("/repo")
    assert options.model == "opus"
    assert options.max_turns == 2
    assert load_options(None) == ClaudeLinkOptions()
    assert load_options(options) is options


@pytest.mark.parametrize(
    ("system_prompt", "expected"),
    [
        (None, {"systemPrompt": ""}),
        ("You are terse.", {"systemPrompt": "You are terse."}),
        (SystemPromptPreset(), {}),
        (SystemPromptPreset(append="Prefer tabs."), {"appendSystemPrompt": "Prefer tabs."}),
    ],
)
def test_initialize_prompt_fields(system_prompt: object, expected: dict[str, str]) -> None:
    options = ClaudeLinkOptions(system_prompt=system_prompt)

    assert options.initialize_prompt_fields() == expected


def test_resolve_timeouts_prefers_options() -> None:
    settings = ClaudeLinkSettings(control_timeout=30, init_timeout=40, close_grace_period=2)

    assert resolve_timeouts(ClaudeLinkOptions(), settings) == (30, 40, 2)
    assert resolve_timeouts(
        ClaudeLinkOptions(control_timeout=1, close_grace_period=0), settings
    ) == (1, 40, 0)


def test_output_format_requires_schema() -> None:
    with pytest.raises(ConfigError):
        ClaudeLinkOptions(output_format={"type": "json_schema"})
    with pytest.raises(ConfigError):
        ClaudeLinkOptions(output_format={"type": "xml", "schema": {}})

    options = ClaudeLinkOptions(output_format={"schema": {"type": "object"}})
    assert options.output_format is not None
    assert options.output_format.json_schema == {"type": "object"}
