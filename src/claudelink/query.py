"""The streaming query: one agent process, one ordered message sequence."""

from __future__ import annotations

import contextlib
import enum
import functools
import math
from collections import deque
from collections.abc import AsyncIterable, Mapping
from types import TracebackType
from typing import Any, TypeAlias

import anyio
import msgspec
from anyio.abc import TaskGroup, TaskStatus

from .args import build_cli_args
from .channel import InputChannel
from .control import ControlCorrelator
from .errors import (
    ClaudeLinkError,
    ClosedError,
    ControlError,
    ProcessExitedUnexpectedly,
    UnsupportedOperation,
    report_error,
)
from .hooks import HookDispatcher
from .logging import get_logger
from .options import ClaudeLinkOptions, load_options, resolve_timeouts
from .permissions import PERMISSION_MODES, PermissionBridge
from .process import AnyioProcessSpawner, ProcessHandle, ProcessSpawner, build_env, cli_name
from .pump import MessagePump
from .schemas import claude as claude_schema
from .settings import ClaudeLinkSettings, load_settings
from .utils.streams import STDERR_CAPTURE_MAX, drain_stderr, stderr_excerpt
from .utils.subprocess import manage_subprocess, terminate_process

logger = get_logger(__name__)

Prompt: TypeAlias = (
    str | list[dict[str, Any]] | Mapping[str, Any] | claude_schema.OutboundUserMessage
)
PromptSource: TypeAlias = Prompt | AsyncIterable[Prompt] | None

SYNTHETIC_RESULT_SUBTYPE = "error_during_execution"


class QueryState(enum.Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    AWAITING_INPUT = "awaiting_input"
    CLOSED = "closed"


def coerce_turn(
    prompt: Prompt, *, parent_tool_use_id: str | None = None
) -> claude_schema.OutboundUserMessage:
    if isinstance(prompt, claude_schema.OutboundUserMessage):
        return prompt
    if isinstance(prompt, (str, list)):
        return claude_schema.user_message(prompt, parent_tool_use_id=parent_tool_use_id)
    if isinstance(prompt, Mapping):
        try:
            return msgspec.convert(dict(prompt), type=claude_schema.OutboundUserMessage)
        except msgspec.ValidationError as exc:
            raise TypeError(f"not a user message: {exc}") from exc
    raise TypeError(f"unsupported prompt type: {type(prompt).__name__}")


class Query:
    """A live session with the agent CLI.

    Entering it as an async context manager spawns the agent; leaving the
    block closes it and exits the task groups it opened. Iterate it to
    receive every record the agent emits, in order. Control operations may
    be called concurrently with iteration. Only one task may iterate at a
    time.
    """

    def __init__(
        self,
        prompt: PromptSource,
        options: ClaudeLinkOptions,
        *,
        spawner: ProcessSpawner | None = None,
        settings: ClaudeLinkSettings | None = None,
    ) -> None:
        self._prompt = prompt
        self._options = options
        self._settings = settings if settings is not None else load_settings()
        self._spawner = spawner if spawner is not None else AnyioProcessSpawner()
        (
            self._control_timeout,
            self._init_timeout,
            self._grace_period,
        ) = resolve_timeouts(options, self._settings)

        self._state = QueryState.INITIALIZING
        self._started = False
        self._session_id: str | None = None
        self._init_result: claude_schema.InitializeResult | None = None

        self._hooks = HookDispatcher(options.hooks, on_error=self._report)
        self._permissions = PermissionBridge(
            options.can_use_tool,
            bypass=options.bypass_permissions,
            on_error=self._report,
        )
        self._channel = InputChannel()
        self._out_send, self._out_receive = anyio.create_memory_object_stream[
            claude_schema.StreamMessage
        ](math.inf)

        self._stack: contextlib.AsyncExitStack | None = None
        self._engine: TaskGroup | None = None
        self._proc: ProcessHandle | None = None
        self._pump: MessagePump | None = None
        self._correlator: ControlCorrelator | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_CAPTURE_MAX)

        self._ready = anyio.Event()
        self._turn_in_flight = False
        self._last_emitted: claude_schema.StreamMessage | None = None
        self._exited = False
        self._consuming = False

    # -- lifecycle ---------------------------------------------------------

    @property
    def state(self) -> QueryState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    async def __aenter__(self) -> Query:
        await self._start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool | None:
        await self.close()
        stack, self._stack = self._stack, None
        if stack is not None:
            await stack.aclose()
        return None

    async def _start(self) -> None:
        """Spawn the agent, perform the handshake and queue the prompt."""
        if self._started:
            raise RuntimeError("query already started")
        if self._state is QueryState.CLOSED:
            raise ClosedError("query is closed")
        self._started = True
        options = self._options
        cmd = [cli_name(options.cli_path, settings=self._settings), *build_cli_args(options)]
        cwd = str(options.cwd) if options.cwd is not None else None

        try:
            await self._open(cmd, cwd)
        except BaseException:
            self._state = QueryState.CLOSED
            self._channel.discard()
            self._out_send.close()
            raise

    async def _open(self, cmd: list[str], cwd: str | None) -> None:
        options = self._options
        async with contextlib.AsyncExitStack() as stack:
            proc = await stack.enter_async_context(
                manage_subprocess(
                    self._spawner,
                    cmd,
                    env=build_env(options.env),
                    cwd=cwd,
                    grace_period=self._grace_period,
                )
            )
            self._proc = proc
            self._pump = MessagePump(proc, on_malformed=self._report)
            self._correlator = ControlCorrelator(
                self._pump.send,
                hooks=self._hooks,
                permissions=self._permissions,
                default_timeout=self._control_timeout,
            )
            outer = await stack.enter_async_context(anyio.create_task_group())
            await outer.start(self._run_engine)
            # Raising inside the task group would wrap the error in an ExceptionGroup.
            try:
                await self._initialize()
            except ClaudeLinkError as exc:
                failure = exc
                assert self._engine is not None
                self._engine.cancel_scope.cancel()
            else:
                self._queue_prompt()
                self._stack = stack.pop_all()
                return
        logger.error("query.start_failed", error=str(failure), pid=self.pid)
        raise failure

    async def _run_engine(self, *, task_status: TaskStatus[None]) -> None:
        assert self._proc is not None
        async with anyio.create_task_group() as engine:
            self._engine = engine
            if self._proc.stderr is not None:
                engine.start_soon(
                    functools.partial(
                        drain_stderr,
                        self._proc.stderr,
                        logger,
                        "claude",
                        handler=self._options.stderr,
                        capture=self._stderr_tail,
                    )
                )
            engine.start_soon(self._read_loop)
            engine.start_soon(self._write_loop)
            task_status.started()

    async def _initialize(self) -> None:
        assert self._correlator is not None
        options = self._options
        request = claude_schema.ControlInitializeRequest(
            hooks=self._hooks.wire_config(),
            agents=options.agents,
            **options.initialize_prompt_fields(),
        )
        payload = await self._correlator.call(
            request, timeout=self._init_timeout, prefix="init"
        )
        try:
            self._init_result = claude_schema.decode_initialize_result(payload)
        except msgspec.ValidationError as exc:
            raise ControlError("initialize", "-", f"unexpected payload: {exc}") from exc
        logger.info(
            "control.initialized",
            pid=self.pid,
            commands=len(self._init_result.commands),
            models=len(self._init_result.models),
        )
        self._ready.set()

    def _queue_prompt(self) -> None:
        prompt = self._prompt
        if prompt is None:
            return
        if isinstance(prompt, AsyncIterable):
            assert self._engine is not None
            self._engine.start_soon(self._feed_input, prompt)
            return
        self._channel.push(coerce_turn(prompt))

    async def _feed_input(self, source: AsyncIterable[Prompt]) -> None:
        try:
            async for item in source:
                self._channel.push(coerce_turn(item))
        except ClosedError:
            logger.debug("input.source_closed")
            return
        self._channel.close()

    # -- background loops --------------------------------------------------

    async def _write_loop(self) -> None:
        assert self._pump is not None
        async for turn in self._channel:
            await self._ready.wait()
            if self._state is QueryState.CLOSED:
                return
            if not turn.session_id and self._session_id:
                turn = msgspec.structs.replace(turn, session_id=self._session_id)
            self._ready = anyio.Event()
            self._turn_in_flight = True
            if self._state is QueryState.AWAITING_INPUT:
                self._state = QueryState.ACTIVE
            try:
                await self._pump.send(turn)
            except ClosedError as exc:
                logger.warning("input.write_failed", error=str(exc))
                self._turn_in_flight = False
                self._ready.set()
                return
            logger.info("turn.sent", session_id=self._session_id)
        await self._ready.wait()
        await self._pump.close_input()

    async def _read_loop(self) -> None:
        assert self._pump is not None and self._proc is not None
        assert self._correlator is not None and self._engine is not None
        async for message in self._pump.iter_messages():
            match message:
                case claude_schema.StreamControlResponse(response=response):
                    self._correlator.deliver(response)
                case claude_schema.StreamControlRequest():
                    self._engine.start_soon(self._correlator.handle_inbound, message)
                case _:
                    await self._emit(message)
        returncode = await self._proc.wait()
        await self._on_exit(returncode)

    async def _emit(self, message: claude_schema.StreamMessage) -> None:
        self._track_session(message)
        if isinstance(message, claude_schema.StreamResultMessage):
            self._turn_in_flight = False
            if self._state is not QueryState.CLOSED:
                self._state = QueryState.AWAITING_INPUT
            self._ready.set()
        self._last_emitted = message
        try:
            await self._out_send.send(message)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("query.output_dropped", type=claude_schema.record_type(message))

    def _track_session(self, message: claude_schema.StreamMessage) -> None:
        session_id = getattr(message, "session_id", None)
        if isinstance(message, claude_schema.StreamSystemMessage) and message.subtype == "init":
            if self._session_id is None and session_id:
                self._session_id = session_id
                logger.info("session.started", session_id=session_id, model=message.model)
            if self._state is QueryState.INITIALIZING:
                self._state = QueryState.ACTIVE
        if session_id and self._session_id and session_id != self._session_id:
            logger.warning(
                "session.mismatch",
                expected=self._session_id,
                received=session_id,
                type=claude_schema.record_type(message),
            )

    async def _on_exit(self, returncode: int | None) -> None:
        assert self._correlator is not None and self._pump is not None
        self._exited = True
        excerpt = stderr_excerpt(self._stderr_tail)
        closing = self._state is QueryState.CLOSED
        expected = self._pump.input_closed and returncode == 0
        needs_result = self._turn_in_flight or not isinstance(
            self._last_emitted, claude_schema.StreamResultMessage
        )

        error: ClaudeLinkError
        if closing or expected:
            error = ClosedError("agent process has exited")
        else:
            error = ProcessExitedUnexpectedly(returncode, stderr_excerpt=excerpt)
            logger.warning(
                "subprocess.exit.unexpected",
                pid=self.pid,
                returncode=returncode,
                session_id=self._session_id,
            )
            report_error(self._options.on_error, error, logger=logger)
        if needs_result and not closing:
            await self._emit(self._synthetic_result(returncode, excerpt))

        self._correlator.reject_all(error)
        self._channel.close()
        self._ready.set()
        self._out_send.close()

    def _synthetic_result(
        self, returncode: int | None, excerpt: str | None
    ) -> claude_schema.StreamResultMessage:
        text = f"claude exited before producing a result (rc={returncode})"
        if excerpt:
            text = f"{text}\n{excerpt}"
        return claude_schema.StreamResultMessage(
            subtype=SYNTHETIC_RESULT_SUBTYPE,
            session_id=self._session_id,
            is_error=True,
            num_turns=0,
            result=text,
        )

    def _report(self, error: ClaudeLinkError) -> None:
        report_error(self._options.on_error, error, logger=logger)

    # -- iteration ---------------------------------------------------------

    def __aiter__(self) -> Query:
        return self

    async def __anext__(self) -> claude_schema.StreamMessage:
        if not self._started and self._state is not QueryState.CLOSED:
            raise RuntimeError("query has not been started; use `async with query(...)`")
        if self._consuming:
            raise RuntimeError("query is already being iterated by another task")
        self._consuming = True
        try:
            return await self._out_receive.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            raise StopAsyncIteration from None
        finally:
            self._consuming = False

    # -- operations --------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._state is QueryState.CLOSED:
            raise ClosedError("query is closed")
        if not self._started:
            raise RuntimeError("query has not been started; use `async with query(...)`")
        if self._exited:
            raise ClosedError("agent process has exited")

    async def _control(
        self, request: claude_schema.ControlRequest, timeout: float | None
    ) -> dict[str, Any]:
        self._ensure_open()
        assert self._correlator is not None
        return await self._correlator.call(request, timeout=timeout)

    def push(self, prompt: Prompt, *, parent_tool_use_id: str | None = None) -> None:
        """Queue a user turn. It is written once the agent is ready for input."""
        self._ensure_open()
        self._channel.push(coerce_turn(prompt, parent_tool_use_id=parent_tool_use_id))

    def end_input(self) -> None:
        """No more turns: stdin closes after the last queued turn's result."""
        if self._state is QueryState.CLOSED:
            raise ClosedError("query is closed")
        self._channel.close()

    async def interrupt(self, *, timeout: float | None = None) -> None:
        await self._control(claude_schema.ControlInterruptRequest(), timeout)

    async def set_permission_mode(self, mode: str, *, timeout: float | None = None) -> None:
        if mode not in PERMISSION_MODES:
            raise ValueError(f"unknown permission mode {mode!r}")
        await self._control(claude_schema.ControlSetPermissionModeRequest(mode=mode), timeout)
        self._permissions.set_mode(mode)
        logger.info("permission.mode_changed", mode=mode)

    async def set_model(self, model: str | None = None, *, timeout: float | None = None) -> None:
        await self._control(claude_schema.ControlSetModelRequest(model=model), timeout)

    async def set_max_thinking_tokens(
        self, max_thinking_tokens: int | None, *, timeout: float | None = None
    ) -> None:
        await self._control(
            claude_schema.ControlSetMaxThinkingTokensRequest(
                max_thinking_tokens=max_thinking_tokens
            ),
            timeout,
        )

    async def mcp_server_status(self, *, timeout: float | None = None) -> list[dict[str, Any]]:
        payload = await self._control(claude_schema.ControlMcpStatusRequest(), timeout)
        servers = payload.get("mcpServers")
        return list(servers) if isinstance(servers, list) else []

    async def mcp_reconnect(self, server_name: str, *, timeout: float | None = None) -> None:
        await self._control(
            claude_schema.ControlMcpReconnectRequest(serverName=server_name), timeout
        )

    async def mcp_toggle(
        self, server_name: str, enabled: bool, *, timeout: float | None = None
    ) -> None:
        await self._control(
            claude_schema.ControlMcpToggleRequest(serverName=server_name, enabled=enabled),
            timeout,
        )

    async def mcp_set_servers(
        self, servers: Mapping[str, Any], *, timeout: float | None = None
    ) -> dict[str, Any]:
        return await self._control(
            claude_schema.ControlMcpSetServersRequest(servers=dict(servers)), timeout
        )

    async def rewind_files(
        self,
        user_message_id: str,
        *,
        dry_run: bool = False,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self._control(
            claude_schema.ControlRewindFilesRequest(
                user_message_id=user_message_id,
                dry_run=dry_run or None,
            ),
            timeout,
        )

    def initialization_result(self) -> claude_schema.InitializeResult:
        if self._state is QueryState.CLOSED:
            raise ClosedError("query is closed")
        if self._init_result is None:
            raise RuntimeError("query has not been initialized")
        return self._init_result

    def supported_commands(self) -> list[claude_schema.SlashCommand]:
        return list(self.initialization_result().commands)

    def supported_models(self) -> list[claude_schema.ModelInfo]:
        return list(self.initialization_result().models)

    def account_info(self) -> dict[str, Any]:
        return dict(self.initialization_result().account or {})

    async def fork_session(self, *args: Any, **kwargs: Any) -> None:
        self._ensure_open()
        raise UnsupportedOperation("fork_session is not supported")

    async def resume_at(self, *args: Any, **kwargs: Any) -> None:
        self._ensure_open()
        raise UnsupportedOperation("resume_at is not supported")

    async def close(self) -> None:
        """Stop the session and release the process. Idempotent."""
        if self._state is QueryState.CLOSED:
            return
        self._state = QueryState.CLOSED
        logger.info("query.close", session_id=self._session_id, pid=self.pid)
        self._channel.discard()
        if self._correlator is not None:
            self._correlator.reject_all(ClosedError("query is closed"))
        self._ready.set()
        with anyio.CancelScope(shield=True):
            if self._pump is not None:
                with anyio.move_on_after(self._grace_period):
                    await self._pump.close_input()
            if self._proc is not None:
                await terminate_process(self._proc, grace_period=self._grace_period)
        if self._engine is not None:
            self._engine.cancel_scope.cancel()
        self._out_send.close()
        self._out_receive.close()


def query(
    prompt: PromptSource = None,
    options: ClaudeLinkOptions | Mapping[str, Any] | None = None,
    *,
    spawner: ProcessSpawner | None = None,
    settings: ClaudeLinkSettings | None = None,
) -> Query:
    """Create a :class:`Query`. Nothing is spawned until it is entered."""
    return Query(prompt, load_options(options), spawner=spawner, settings=settings)
