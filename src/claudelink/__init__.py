"""Drive the Claude CLI over its stream-json stdio protocol."""

from __future__ import annotations

from .errors import (
    ClaudeLinkError,
    ClosedError,
    ConfigError,
    ControlError,
    ControlTimeout,
    HookError,
    MalformedMessage,
    PermissionCallbackError,
    ProcessExitedUnexpectedly,
    SpawnError,
    UnsupportedOperation,
)
from .hooks import HookContext, HookMatcher, HookResult
from .options import ClaudeLinkOptions, OutputFormat, SystemPromptPreset, ToolsPreset
from .permissions import (
    PermissionResultAllow,
    PermissionResultDeny,
    ToolPermissionContext,
)
from .query import Query, QueryState, query

__version__ = "0.1.0"

__all__ = [
    "ClaudeLinkError",
    "ClaudeLinkOptions",
    "ClosedError",
    "ConfigError",
    "ControlError",
    "ControlTimeout",
    "HookContext",
    "HookError",
    "HookMatcher",
    "HookResult",
    "MalformedMessage",
    "OutputFormat",
    "PermissionCallbackError",
    "PermissionResultAllow",
    "PermissionResultDeny",
    "ProcessExitedUnexpectedly",
    "Query",
    "QueryState",
    "SpawnError",
    "SystemPromptPreset",
    "ToolPermissionContext",
    "ToolsPreset",
    "UnsupportedOperation",
    "query",
]
