from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from claudelink.args import build_cli_args, permission_prompt_tool
from claudelink.hooks import HookMatcher
from claudelink.options import ClaudeLinkOptions


def _value_after(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


def test_defaults() -> None:
    args = build_cli_args(ClaudeLinkOptions())

    assert args == [
        "--output-format",
        "stream-json",
        "--input-format",
        "stream-json",
        "--verbose",
        "--permission-mode",
        "default",
        "--permission-prompt-tool",
        "stdio",
        "--setting-sources",
        "",
    ]


def test_value_flags() -> None:
    args = build_cli_args(
        ClaudeLinkOptions(
            model="opus",
            fallback_model="sonnet",
            max_turns=3,
            max_thinking_tokens=2048,
            max_budget_usd=1.5,
            allowed_tools=["Read", "Grep"],
            disallowed_tools=["Bash"],
            setting_sources=["user", "project"],
        )
    )

    assert _value_after(args, "--model") == "opus"
    assert _value_after(args, "--fallback-model") == "sonnet"
    assert _value_after(args, "--max-turns") == "3"
    assert _value_after(args, "--max-thinking-tokens") == "2048"
    assert _value_after(args, "--max-budget-usd") == "1.5"
    assert _value_after(args, "--allowedTools") == "Read,Grep"
    assert _value_after(args, "--disallowedTools") == "Bash"
    assert _value_after(args, "--setting-sources") == "user,project"


def test_repeated_directory_flags(tmp_path: Path) -> None:
    first, second = tmp_path / "a", tmp_path / "b"
    args = build_cli_args(
        ClaudeLinkOptions(add_dirs=[first, second], plugin_dirs=[tmp_path / "plugins"])
    )

    assert [args[i + 1] for i, flag in enumerate(args) if flag == "--add-dir"] == [
        str(first),
        str(second),
    ]
    assert _value_after(args, "--plugin-dir") == str(tmp_path / "plugins")


def test_mcp_config_and_partial_messages() -> None:
    servers: dict[str, Any] = {"docs": {"command": "docs-mcp", "args": ["--stdio"]}}
    args = build_cli_args(ClaudeLinkOptions(mcp_servers=servers, include_partial_messages=True))

    assert json.loads(_value_after(args, "--mcp-config")) == {"mcpServers": servers}
    assert "--include-partial-messages" in args


def test_extra_args_come_last() -> None:
    args = build_cli_args(
        ClaudeLinkOptions(extra_args={"debug-to-stderr": None, "--betas": "context-1m"})
    )

    assert args[-3:] == ["--debug-to-stderr", "--betas", "context-1m"]


def test_bypass_mode_has_no_prompt_tool() -> None:
    options = ClaudeLinkOptions(permission_mode="bypassPermissions")
    args = build_cli_args(options)

    assert permission_prompt_tool(options) is None
    assert "--permission-prompt-tool" not in args
    assert "--allow-dangerously-skip-permissions" in args
    assert _value_after(args, "--permission-mode") == "bypassPermissions"


def test_explicit_prompt_tool_wins() -> None:
    options = ClaudeLinkOptions(permission_prompt_tool_name="mcp__approvals__prompt")

    assert _value_after(build_cli_args(options), "--permission-prompt-tool") == (
        "mcp__approvals__prompt"
    )


def test_permission_request_hooks_use_stdio() -> None:
    options = ClaudeLinkOptions(
        hooks={"PermissionRequest": [HookMatcher(hooks=[lambda *_: None])]}
    )

    assert permission_prompt_tool(options) == "stdio"


def test_output_format_becomes_json_schema() -> None:
    schema = {"type": "object", "properties": {"answer": {"type": "integer"}}}
    options = ClaudeLinkOptions(output_format={"type": "json_schema", "schema": schema})

    assert json.loads(_value_after(build_cli_args(options), "--json-schema")) == schema


def test_tools_list_and_preset() -> None:
    assert _value_after(
        build_cli_args(ClaudeLinkOptions(tools=["Read", "Grep"])), "--tools"
    ) == "Read,Grep"
    assert _value_after(build_cli_args(ClaudeLinkOptions(tools=[])), "--tools") == ""
    assert _value_after(
        build_cli_args(ClaudeLinkOptions(tools={"type": "preset", "preset": "claude_code"})),
        "--tools",
    ) == "default"
    assert "--tools" not in build_cli_args(ClaudeLinkOptions())


def test_sandbox_merges_into_settings() -> None:
    sandbox = {"enabled": True, "autoAllowBashIfSandboxed": True}
    options = ClaudeLinkOptions(
        sandbox=sandbox,
        extra_args={"settings": json.dumps({"model": "opus"})},
    )

    settings = json.loads(_value_after(build_cli_args(options), "--settings"))

    assert settings == {"model": "opus", "sandbox": sandbox}


def test_sandbox_replaces_unparseable_settings() -> None:
    options = ClaudeLinkOptions(sandbox={"enabled": True}, extra_args={"settings": "/etc/x.json"})

    settings = json.loads(_value_after(build_cli_args(options), "--settings"))

    assert settings == {"sandbox": {"enabled": True}}
