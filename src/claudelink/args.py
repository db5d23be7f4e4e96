from __future__ import annotations

import json
from typing import Any

from .options import ClaudeLinkOptions

STREAM_JSON_ARGS = (
    "--output-format",
    "stream-json",
    "--input-format",
    "stream-json",
    "--verbose",
)

STDIO_PERMISSION_TOOL = "stdio"


def _coerce_comma_list(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        parts = [str(item) for item in value if item is not None]
        joined = ",".join(part for part in parts if part)
        return joined or None
    text = str(value)
    return text or None


def permission_prompt_tool(options: ClaudeLinkOptions) -> str | None:
    """Where the CLI should send permission prompts.

    Outside bypass mode prompts come back over the control channel so that
    the permission bridge (and PermissionRequest hooks) decide them.
    """
    if options.permission_prompt_tool_name is not None:
        return options.permission_prompt_tool_name
    if options.bypass_permissions:
        return None
    return STDIO_PERMISSION_TOOL


def _merged_extra_args(options: ClaudeLinkOptions) -> dict[str, str | None]:
    """``extra_args`` with ``sandbox`` folded into the ``--settings`` JSON."""
    extra = {flag.lstrip("-"): value for flag, value in options.extra_args.items()}
    if options.sandbox is None:
        return extra
    settings: dict[str, Any] = {}
    current = extra.get("settings")
    if current:
        try:
            parsed = json.loads(current)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            settings = parsed
    settings["sandbox"] = options.sandbox
    extra["settings"] = json.dumps(settings)
    return extra


def build_cli_args(options: ClaudeLinkOptions) -> list[str]:
    args: list[str] = list(STREAM_JSON_ARGS)
    args.extend(["--permission-mode", options.permission_mode])
    if options.bypass_permissions:
        args.append("--allow-dangerously-skip-permissions")

    if options.model is not None:
        args.extend(["--model", options.model])
    if options.fallback_model is not None:
        args.extend(["--fallback-model", options.fallback_model])
    if options.max_turns is not None:
        args.extend(["--max-turns", str(options.max_turns)])
    if options.max_thinking_tokens is not None:
        args.extend(["--max-thinking-tokens", str(options.max_thinking_tokens)])
    if options.max_budget_usd is not None:
        args.extend(["--max-budget-usd", str(options.max_budget_usd)])

    allowed_tools = _coerce_comma_list(options.allowed_tools)
    if allowed_tools is not None:
        args.extend(["--allowedTools", allowed_tools])
    disallowed_tools = _coerce_comma_list(options.disallowed_tools)
    if disallowed_tools is not None:
        args.extend(["--disallowedTools", disallowed_tools])

    prompt_tool = permission_prompt_tool(options)
    if prompt_tool is not None:
        args.extend(["--permission-prompt-tool", prompt_tool])

    if options.output_format is not None:
        args.extend(["--json-schema", json.dumps(options.output_format.json_schema)])

    # Always passed so an empty list means "load no filesystem settings".
    args.extend(["--setting-sources", ",".join(options.setting_sources)])

    if isinstance(options.tools, list):
        args.extend(["--tools", ",".join(options.tools)])
    elif options.tools is not None:
        args.extend(["--tools", "default"])

    for directory in options.add_dirs:
        args.extend(["--add-dir", str(directory)])
    for directory in options.plugin_dirs:
        args.extend(["--plugin-dir", str(directory)])

    if options.mcp_servers:
        args.extend(["--mcp-config", json.dumps({"mcpServers": options.mcp_servers})])
    if options.include_partial_messages:
        args.append("--include-partial-messages")

    for flag, value in _merged_extra_args(options).items():
        args.append(f"--{flag}")
        if value is not None:
            args.append(value)
    return args
