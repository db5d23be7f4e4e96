from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    InstanceOf,
    ValidationError,
    model_validator,
)

from .errors import ConfigError
from .hooks import HookEvent, HookMatcher
from .permissions import BYPASS_MODE, PermissionMode
from .settings import ClaudeLinkSettings, NonEmptyStr

SettingSource = Literal["user", "project", "local"]


class SystemPromptPreset(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["preset"] = "preset"
    preset: Literal["claude_code"] = "claude_code"
    append: str | None = None


class ToolsPreset(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["preset"] = "preset"
    preset: Literal["claude_code"] = "claude_code"


class OutputFormat(BaseModel):
    """Structured output: the final result must validate against ``schema``."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: Literal["json_schema"] = "json_schema"
    json_schema: dict[str, Any] = Field(alias="schema")


class ClaudeLinkOptions(BaseModel):
    """Per-session configuration. Unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    cwd: Path | None = None
    cli_path: NonEmptyStr | None = None
    env: dict[str, str] = Field(default_factory=dict)

    model: NonEmptyStr | None = None
    fallback_model: NonEmptyStr | None = None
    permission_mode: PermissionMode = "default"
    permission_prompt_tool_name: NonEmptyStr | None = None
    max_turns: int | None = Field(default=None, ge=1)
    max_thinking_tokens: int | None = Field(default=None, ge=0)
    max_budget_usd: float | None = Field(default=None, gt=0)
    allowed_tools: list[NonEmptyStr] = Field(default_factory=list)
    disallowed_tools: list[NonEmptyStr] = Field(default_factory=list)
    system_prompt: str | SystemPromptPreset | None = None
    tools: list[str] | ToolsPreset | None = None
    output_format: OutputFormat | None = None

    hooks: dict[HookEvent, list[InstanceOf[HookMatcher]]] = Field(default_factory=dict)
    can_use_tool: Callable[..., Any] | None = None

    setting_sources: list[SettingSource] = Field(default_factory=list)
    plugin_dirs: list[Path] = Field(default_factory=list)
    add_dirs: list[Path] = Field(default_factory=list)
    mcp_servers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    sandbox: dict[str, Any] | None = None
    agents: dict[str, dict[str, Any]] | None = None
    include_partial_messages: bool = False
    extra_args: dict[NonEmptyStr, str | None] = Field(default_factory=dict)

    stderr: Callable[[str], Any] | None = None
    on_error: Callable[..., Any] | None = None

    control_timeout: float | None = Field(default=None, gt=0)
    init_timeout: float | None = Field(default=None, gt=0)
    close_grace_period: float | None = Field(default=None, ge=0)

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid options: {exc}") from exc

    @model_validator(mode="after")
    def _check_combinations(self) -> ClaudeLinkOptions:
        if self.fallback_model is not None and self.fallback_model == self.model:
            raise ValueError("fallback_model must differ from model")
        if self.can_use_tool is not None and self.permission_prompt_tool_name is not None:
            raise ValueError(
                "can_use_tool and permission_prompt_tool_name are mutually exclusive"
            )
        return self

    @property
    def bypass_permissions(self) -> bool:
        return self.permission_mode == BYPASS_MODE

    def initialize_prompt_fields(self) -> dict[str, str]:
        """``systemPrompt``/``appendSystemPrompt`` for the handshake."""
        prompt = self.system_prompt
        if prompt is None:
            return {"systemPrompt": ""}
        if isinstance(prompt, str):
            return {"systemPrompt": prompt}
        if prompt.append:
            return {"appendSystemPrompt": prompt.append}
        return {}


def load_options(
    options: ClaudeLinkOptions | Mapping[str, Any] | None,
) -> ClaudeLinkOptions:
    if options is None:
        return ClaudeLinkOptions()
    if isinstance(options, ClaudeLinkOptions):
        return options
    try:
        return ClaudeLinkOptions.model_validate(dict(options))
    except ValidationError as exc:
        raise ConfigError(f"Invalid options: {exc}") from exc


def resolve_timeouts(
    options: ClaudeLinkOptions, settings: ClaudeLinkSettings
) -> tuple[float, float, float]:
    """(control, init, close grace) with option values overriding settings."""
    return (
        (
            options.control_timeout
            if options.control_timeout is not None
            else settings.control_timeout
        ),
        options.init_timeout if options.init_timeout is not None else settings.init_timeout,
        (
            options.close_grace_period
            if options.close_grace_period is not None
            else settings.close_grace_period
        ),
    )
