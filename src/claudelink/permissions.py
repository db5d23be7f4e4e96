"""Tool-use permission decisions."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

from .errors import ErrorHandler, PermissionCallbackError, report_error
from .hooks import HookResult
from .logging import get_logger

logger = get_logger(__name__)

PermissionMode = Literal["default", "acceptEdits", "bypassPermissions", "plan"]
PERMISSION_MODES: frozenset[str] = frozenset(
    {"default", "acceptEdits", "bypassPermissions", "plan"}
)
BYPASS_MODE = "bypassPermissions"

NO_CALLBACK_MESSAGE = "No permission callback configured; tool use denied."
NO_DECISION_MESSAGE = "Permission callback returned no decision; tool use denied."


@dataclass(frozen=True, slots=True)
class ToolPermissionContext:
    tool_use_id: str | None = None
    suggestions: list[dict[str, Any]] = field(default_factory=list)
    blocked_path: str | None = None
    decision_reason: str | None = None
    agent_id: str | None = None


@dataclass(frozen=True, slots=True)
class PermissionResultAllow:
    updated_input: dict[str, Any] | None = None
    updated_permissions: list[dict[str, Any]] | None = None

    @property
    def behavior(self) -> Literal["allow"]:
        return "allow"

    def to_wire(self, original_input: dict[str, Any]) -> dict[str, Any]:
        # The CLI requires updatedInput on every allow.
        out: dict[str, Any] = {
            "behavior": "allow",
            "updatedInput": (
                self.updated_input if self.updated_input is not None else original_input
            ),
        }
        if self.updated_permissions is not None:
            out["updatedPermissions"] = self.updated_permissions
        return out


@dataclass(frozen=True, slots=True)
class PermissionResultDeny:
    message: str = ""
    interrupt: bool = False

    @property
    def behavior(self) -> Literal["deny"]:
        return "deny"

    def to_wire(self, original_input: dict[str, Any]) -> dict[str, Any]:
        out: dict[str, Any] = {"behavior": "deny", "message": self.message}
        if self.interrupt:
            out["interrupt"] = True
        return out


PermissionResult: TypeAlias = PermissionResultAllow | PermissionResultDeny

PermissionCallback = Callable[
    [str, dict[str, Any], ToolPermissionContext],
    Awaitable[PermissionResult | None] | PermissionResult | None,
]


def permission_from_hook(result: HookResult) -> PermissionResult | None:
    """Translate a PermissionRequest hook verdict; ``None`` defers to the bridge."""
    if result.permission_decision == "allow":
        return PermissionResultAllow(updated_input=result.updated_input)
    if result.permission_decision == "deny":
        return PermissionResultDeny(
            message=result.permission_decision_reason or "Denied by hook",
        )
    if result.decision == "block" or not result.continue_:
        return PermissionResultDeny(
            message=result.reason or result.stop_reason or "Blocked by hook",
            interrupt=not result.continue_,
        )
    if result.decision == "approve":
        return PermissionResultAllow(updated_input=result.updated_input)
    return None


class PermissionBridge:
    """Answers ``can_use_tool``. Fails closed when nothing decides."""

    def __init__(
        self,
        callback: PermissionCallback | None = None,
        *,
        bypass: bool = False,
        on_error: ErrorHandler | None = None,
    ) -> None:
        self._callback = callback
        self.bypass = bypass
        self._on_error = on_error

    @property
    def has_callback(self) -> bool:
        return self._callback is not None

    def set_mode(self, mode: str) -> None:
        self.bypass = mode == BYPASS_MODE

    async def decide(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        context: ToolPermissionContext,
    ) -> PermissionResult:
        if self.bypass:
            logger.debug("permission.bypass", tool_name=tool_name)
            return PermissionResultAllow()
        if self._callback is None:
            logger.info(
                "permission.no_callback",
                tool_name=tool_name,
                tool_use_id=context.tool_use_id,
            )
            return PermissionResultDeny(message=NO_CALLBACK_MESSAGE)

        try:
            outcome = self._callback(tool_name, tool_input, context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:  # noqa: BLE001
            return self._failed(tool_name, f"{exc.__class__.__name__}: {exc}")

        if outcome is None:
            logger.info("permission.undecided", tool_name=tool_name)
            return PermissionResultDeny(message=NO_DECISION_MESSAGE)
        if not isinstance(outcome, (PermissionResultAllow, PermissionResultDeny)):
            return self._failed(
                tool_name,
                f"returned {type(outcome).__name__}, expected a permission result",
            )
        return outcome

    def _failed(self, tool_name: str, reason: str) -> PermissionResultDeny:
        logger.error("permission.callback_error", tool_name=tool_name, error=reason)
        report_error(
            self._on_error,
            PermissionCallbackError(tool_name, reason),
            logger=logger,
        )
        return PermissionResultDeny(message=f"Permission callback failed: {reason}")
