"""Error taxonomy for the query engine."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any


class ClaudeLinkError(RuntimeError):
    pass


class ConfigError(ClaudeLinkError):
    pass


class SpawnError(ClaudeLinkError):
    """The agent process could not be located or launched."""


class MalformedMessage(ClaudeLinkError):
    """A single stdout line could not be decoded. The stream continues."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"malformed message: {reason}")
        self.line = line
        self.reason = reason


class ControlTimeout(ClaudeLinkError):
    def __init__(self, subtype: str, request_id: str, timeout: float) -> None:
        super().__init__(
            f"control request {subtype!r} ({request_id}) timed out after {timeout:g}s"
        )
        self.subtype = subtype
        self.request_id = request_id
        self.timeout = timeout


class ControlError(ClaudeLinkError):
    def __init__(self, subtype: str, request_id: str, error: str) -> None:
        super().__init__(f"control request {subtype!r} failed: {error}")
        self.subtype = subtype
        self.request_id = request_id
        self.error = error


class HookError(ClaudeLinkError):
    def __init__(self, event_name: str, tool_name: str | None, reason: str) -> None:
        target = f" for tool {tool_name!r}" if tool_name else ""
        super().__init__(f"{event_name} hook failed{target}: {reason}")
        self.event_name = event_name
        self.tool_name = tool_name
        self.reason = reason


class PermissionCallbackError(ClaudeLinkError):
    def __init__(self, tool_name: str, reason: str) -> None:
        super().__init__(f"permission callback failed for tool {tool_name!r}: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class ProcessExitedUnexpectedly(ClaudeLinkError):
    def __init__(
        self,
        returncode: int | None,
        *,
        stderr_excerpt: str | None = None,
    ) -> None:
        message = f"agent process exited unexpectedly (rc={returncode})"
        if stderr_excerpt:
            message = f"{message}\n{stderr_excerpt}"
        super().__init__(message)
        self.returncode = returncode
        self.stderr_excerpt = stderr_excerpt


class ClosedError(ClaudeLinkError):
    pass


class UnsupportedOperation(ClaudeLinkError):
    pass


ErrorHandler = Callable[[ClaudeLinkError], Any]


def report_error(
    handler: ErrorHandler | None,
    error: ClaudeLinkError,
    *,
    logger: Any,
) -> None:
    """Hand a recovered error to the caller's error channel."""
    if handler is None:
        return
    try:
        handler(error)
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "error_channel.failed",
            error=str(exc),
            error_type=exc.__class__.__name__,
            reported=error.__class__.__name__,
        )
