"""Request/response correlation for the stream-json control protocol."""

from __future__ import annotations

import itertools
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import anyio

from .errors import ClaudeLinkError, ClosedError, ControlError, ControlTimeout
from .hooks import PERMISSION_REQUEST_EVENT, HookDispatcher
from .logging import get_logger
from .permissions import (
    PermissionBridge,
    PermissionResult,
    ToolPermissionContext,
    permission_from_hook,
)
from .schemas import claude as claude_schema

logger = get_logger(__name__)

SendFn = Callable[[claude_schema.OutboundMessage], Awaitable[None]]


@dataclass(slots=True)
class _PendingCall:
    subtype: str
    done: anyio.Event = field(default_factory=anyio.Event)
    response: dict[str, Any] | None = None
    error: ClaudeLinkError | None = None


class ControlCorrelator:
    """Owns the pending-request table and answers inbound control requests.

    Every outbound ``call`` gets a fresh request id and resolves exactly
    once: by its response, by timeout, or by ``reject_all``. Every inbound
    request gets exactly one response.
    """

    def __init__(
        self,
        send: SendFn,
        *,
        hooks: HookDispatcher,
        permissions: PermissionBridge,
        default_timeout: float = 60.0,
    ) -> None:
        self._send = send
        self._hooks = hooks
        self._permissions = permissions
        self._default_timeout = default_timeout
        self._pending: dict[str, _PendingCall] = {}
        self._counter = itertools.count(1)
        self._rejected: ClaudeLinkError | None = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def next_request_id(self, prefix: str = "req") -> str:
        return f"{prefix}_{next(self._counter)}_{secrets.token_hex(4)}"

    async def call(
        self,
        request: claude_schema.ControlRequest,
        *,
        timeout: float | None = None,
        prefix: str = "req",
    ) -> dict[str, Any]:
        if self._rejected is not None:
            raise self._rejected
        timeout = self._default_timeout if timeout is None else timeout
        subtype = claude_schema.request_subtype(request)
        request_id = self.next_request_id(prefix)
        pending = _PendingCall(subtype=subtype)
        self._pending[request_id] = pending
        try:
            await self._send(
                claude_schema.StreamControlRequest(request_id=request_id, request=request)
            )
            logger.info("control_request.sent", request_id=request_id, subtype=subtype)
            with anyio.fail_after(timeout):
                await pending.done.wait()
        except TimeoutError:
            logger.warning(
                "control_request.timeout",
                request_id=request_id,
                subtype=subtype,
                timeout=timeout,
            )
            raise ControlTimeout(subtype, request_id, timeout) from None
        finally:
            self._pending.pop(request_id, None)
        if pending.error is not None:
            raise pending.error
        return pending.response or {}

    def deliver(self, response: claude_schema.ControlResponse) -> bool:
        """Resolve the matching pending call. Returns ``False`` if none matched."""
        request_id = response.request_id
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.done.is_set():
            logger.warning(
                "control_response.unmatched",
                request_id=request_id,
                subtype=claude_schema.record_type(response),
            )
            return False
        match response:
            case claude_schema.ControlResponseError(error=error):
                pending.error = ControlError(
                    pending.subtype, request_id, error or "unknown error"
                )
            case claude_schema.ControlResponseSuccess(response=payload):
                pending.response = payload or {}
        pending.done.set()
        logger.debug(
            "control_response.received",
            request_id=request_id,
            subtype=pending.subtype,
            ok=pending.error is None,
        )
        return True

    def reject_all(self, error: ClaudeLinkError) -> None:
        """Fail every pending call, and every later one, with ``error``."""
        self._rejected = error
        pending = list(self._pending.items())
        self._pending.clear()
        for request_id, call in pending:
            if call.done.is_set():
                continue
            logger.debug(
                "control_request.rejected",
                request_id=request_id,
                subtype=call.subtype,
                error=str(error),
            )
            call.error = error
            call.done.set()

    async def handle_inbound(
        self, message: claude_schema.StreamControlRequest
    ) -> claude_schema.ControlResponse:
        request_id = message.request_id
        subtype = claude_schema.request_subtype(message.request)
        logger.info("control_request.received", request_id=request_id, subtype=subtype)

        response: claude_schema.ControlResponse
        try:
            payload = await self._dispatch(message.request)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "control_request.failed",
                request_id=request_id,
                subtype=subtype,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            response = claude_schema.ControlResponseError(
                request_id=request_id,
                error=str(exc) or exc.__class__.__name__,
            )
        else:
            response = claude_schema.ControlResponseSuccess(
                request_id=request_id, response=payload
            )

        try:
            await self._send(claude_schema.StreamControlResponse(response=response))
        except ClosedError as exc:
            logger.warning(
                "control_response.failed",
                request_id=request_id,
                subtype=subtype,
                error=str(exc),
            )
        else:
            logger.info(
                "control_response.sent",
                request_id=request_id,
                subtype=subtype,
                ok=isinstance(response, claude_schema.ControlResponseSuccess),
            )
        return response

    async def _dispatch(self, request: Any) -> dict[str, Any]:
        match request:
            case claude_schema.ControlCanUseToolRequest():
                return await self._can_use_tool(request)
            case claude_schema.ControlHookCallbackRequest():
                return await self._hooks.handle_callback(
                    request.callback_id, request.input, request.tool_use_id
                )
            case claude_schema.ControlUnknownRequest(subtype=subtype):
                raise ValueError(f"Unsupported control request subtype: {subtype!r}")
            case _:
                # initialize, interrupt and the SDK-to-CLI subtypes are acknowledged.
                return {}

    async def _can_use_tool(
        self, request: claude_schema.ControlCanUseToolRequest
    ) -> dict[str, Any]:
        context = ToolPermissionContext(
            tool_use_id=request.tool_use_id,
            suggestions=list(request.permission_suggestions or []),
            blocked_path=request.blocked_path,
            decision_reason=request.decision_reason,
            agent_id=request.agent_id,
        )
        decision: PermissionResult | None = None
        if not self._permissions.bypass and self._hooks.has_hooks(PERMISSION_REQUEST_EVENT):
            hook_input = {
                "hook_event_name": PERMISSION_REQUEST_EVENT,
                "tool_name": request.tool_name,
                "tool_input": request.input,
                "permission_suggestions": context.suggestions,
            }
            verdict = await self._hooks.dispatch(
                PERMISSION_REQUEST_EVENT,
                request.tool_name,
                hook_input,
                request.tool_use_id,
            )
            decision = permission_from_hook(verdict)
        if decision is None:
            decision = await self._permissions.decide(request.tool_name, request.input, context)
        logger.info(
            "permission.decided",
            tool_name=request.tool_name,
            tool_use_id=request.tool_use_id,
            behavior=decision.behavior,
        )
        return decision.to_wire(request.input)
