"""Hook matching, invocation and aggregation.

Hooks are registered per event name as an ordered list of
:class:`HookMatcher`. The CLI is told about one callback id per event and
calls back through ``hook_callback`` control requests; selecting matchers
and aggregating results happens here.
"""

from __future__ import annotations

import inspect
import re
from collections.abc import Awaitable, Callable, Collection, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

import anyio

from .errors import ErrorHandler, HookError, report_error
from .logging import get_logger

logger = get_logger(__name__)

HookEvent = Literal[
    "PreToolUse",
    "PostToolUse",
    "PostToolUseFailure",
    "UserPromptSubmit",
    "Notification",
    "Stop",
    "SubagentStart",
    "SubagentStop",
    "PreCompact",
    "SessionStart",
    "SessionEnd",
    "PermissionRequest",
]

# Evaluated locally while answering can_use_tool; never registered with the CLI.
PERMISSION_REQUEST_EVENT = "PermissionRequest"
LOCAL_EVENTS = frozenset({PERMISSION_REQUEST_EVENT})

WILDCARD = "*"


@dataclass(frozen=True, slots=True)
class HookContext:
    event_name: str
    tool_name: str | None = None
    tool_use_id: str | None = None


@dataclass(slots=True)
class HookResult:
    continue_: bool = True
    stop_reason: str | None = None
    decision: Literal["approve", "block"] | None = None
    reason: str | None = None
    system_message: str | None = None
    suppress_output: bool = False
    permission_decision: Literal["allow", "deny", "ask"] | None = None
    permission_decision_reason: str | None = None
    updated_input: dict[str, Any] | None = None
    additional_context: str | None = None

    @classmethod
    def allow(cls, reason: str | None = None) -> HookResult:
        return cls(permission_decision="allow", permission_decision_reason=reason)

    @classmethod
    def deny(cls, reason: str | None = None) -> HookResult:
        return cls(permission_decision="deny", permission_decision_reason=reason)

    @classmethod
    def block(cls, reason: str) -> HookResult:
        return cls(decision="block", reason=reason)

    @classmethod
    def stop(cls, reason: str) -> HookResult:
        return cls(continue_=False, stop_reason=reason)

    @property
    def is_pass_through(self) -> bool:
        return (
            self.continue_
            and self.stop_reason is None
            and self.decision is None
            and self.system_message is None
            and not self.suppress_output
            and self.permission_decision is None
            and self.updated_input is None
            and self.additional_context is None
        )

    def to_wire(self, event_name: str) -> dict[str, Any]:
        """Render as the hook JSON output the CLI expects."""
        out: dict[str, Any] = {"continue": self.continue_}
        if self.stop_reason is not None:
            out["stopReason"] = self.stop_reason
        if self.decision is not None:
            out["decision"] = self.decision
        if self.reason is not None:
            out["reason"] = self.reason
        if self.system_message is not None:
            out["systemMessage"] = self.system_message
        if self.suppress_output:
            out["suppressOutput"] = True

        specific: dict[str, Any] = {}
        if self.permission_decision is not None:
            specific["permissionDecision"] = self.permission_decision
            if self.permission_decision_reason is not None:
                specific["permissionDecisionReason"] = self.permission_decision_reason
        if self.updated_input is not None:
            specific["updatedInput"] = self.updated_input
        if self.additional_context is not None:
            specific["additionalContext"] = self.additional_context
        if specific:
            out["hookSpecificOutput"] = {"hookEventName": event_name, **specific}
        return out


HookCallback = Callable[
    [dict[str, Any], str | None, HookContext],
    Awaitable[HookResult | None] | HookResult | None,
]


@dataclass(frozen=True, slots=True, kw_only=True)
class HookMatcher:
    """Tool-name predicate plus the callbacks it guards.

    ``matcher`` is ``None``, ``""`` or ``"*"`` for every tool, a regular
    expression that must match the whole tool name (``"Edit|Write"``,
    ``"mcp__memory__.*"``), or a collection of exact names.
    """

    matcher: str | Collection[str] | None = None
    hooks: Sequence[HookCallback] = field(default_factory=tuple)
    timeout: float | None = None

    def __post_init__(self) -> None:
        if isinstance(self.matcher, str) and self.matcher not in ("", WILDCARD):
            try:
                re.compile(self.matcher)
            except re.error as exc:
                raise ValueError(f"invalid hook matcher {self.matcher!r}: {exc}") from exc

    def accepts(self, tool_name: str | None) -> bool:
        pattern = self.matcher
        if pattern is None or pattern in ("", WILDCARD):
            return True
        if tool_name is None:
            return False
        if isinstance(pattern, str):
            return re.fullmatch(pattern, tool_name) is not None
        return tool_name in pattern


async def _invoke(
    callback: HookCallback,
    hook_input: dict[str, Any],
    tool_use_id: str | None,
    context: HookContext,
) -> Any:
    outcome = callback(hook_input, tool_use_id, context)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


class HookDispatcher:
    def __init__(
        self,
        hooks: Mapping[str, Sequence[HookMatcher]] | None = None,
        *,
        on_error: ErrorHandler | None = None,
    ) -> None:
        self._hooks: dict[str, list[HookMatcher]] = {
            event: list(matchers) for event, matchers in (hooks or {}).items() if matchers
        }
        self._on_error = on_error
        self._callback_events: dict[str, str] = {}
        remote = [event for event in self._hooks if event not in LOCAL_EVENTS]
        for index, event in enumerate(remote):
            self._callback_events[f"hook_{index}"] = event

    def has_hooks(self, event_name: str) -> bool:
        return bool(self._hooks.get(event_name))

    def wire_config(self) -> dict[str, list[dict[str, Any]]] | None:
        """Hook registration payload for the ``initialize`` request."""
        if not self._callback_events:
            return None
        return {
            event: [{"hookCallbackIds": [callback_id]}]
            for callback_id, event in self._callback_events.items()
        }

    def event_for_callback(self, callback_id: str) -> str | None:
        return self._callback_events.get(callback_id)

    async def dispatch(
        self,
        event_name: str,
        tool_name: str | None,
        hook_input: dict[str, Any],
        tool_use_id: str | None = None,
    ) -> HookResult:
        """Run matching hooks in order; the first non-pass-through result wins."""
        context = HookContext(
            event_name=event_name,
            tool_name=tool_name,
            tool_use_id=tool_use_id,
        )
        for matcher in self._hooks.get(event_name, ()):
            if not matcher.accepts(tool_name):
                continue
            for callback in matcher.hooks:
                result = await self._run_one(
                    callback, matcher, hook_input, tool_use_id, context
                )
                if result is not None and not result.is_pass_through:
                    logger.debug(
                        "hook.decided",
                        event_name=event_name,
                        tool_name=tool_name,
                        decision=result.decision,
                        permission_decision=result.permission_decision,
                    )
                    return result
        return HookResult()

    async def handle_callback(
        self,
        callback_id: str,
        hook_input: dict[str, Any],
        tool_use_id: str | None,
    ) -> dict[str, Any]:
        event_name = self.event_for_callback(callback_id)
        if event_name is None:
            raise KeyError(f"unknown hook callback id {callback_id!r}")
        tool_name = hook_input.get("tool_name")
        result = await self.dispatch(
            event_name,
            tool_name if isinstance(tool_name, str) else None,
            hook_input,
            tool_use_id,
        )
        return result.to_wire(event_name)

    async def _run_one(
        self,
        callback: HookCallback,
        matcher: HookMatcher,
        hook_input: dict[str, Any],
        tool_use_id: str | None,
        context: HookContext,
    ) -> HookResult | None:
        try:
            if matcher.timeout is None:
                outcome = await _invoke(callback, hook_input, tool_use_id, context)
            else:
                with anyio.fail_after(matcher.timeout):
                    outcome = await _invoke(callback, hook_input, tool_use_id, context)
        except TimeoutError:
            reason = f"timed out after {matcher.timeout:g}s"
        except Exception as exc:  # noqa: BLE001
            reason = f"{exc.__class__.__name__}: {exc}"
        else:
            if outcome is None or isinstance(outcome, HookResult):
                return outcome
            reason = f"returned {type(outcome).__name__}, expected HookResult or None"

        error = HookError(context.event_name, context.tool_name, reason)
        logger.warning(
            "hook.error",
            event_name=context.event_name,
            tool_name=context.tool_name,
            tool_use_id=tool_use_id,
            error=reason,
        )
        report_error(self._on_error, error, logger=logger)
        return None
