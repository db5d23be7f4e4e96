"""Newline-delimited JSON framing over the agent's stdio pipes."""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Callable
from typing import Any

import anyio
import msgspec

from .errors import ClosedError, MalformedMessage, SpawnError
from .logging import get_logger, log_pipeline
from .process import ProcessHandle
from .schemas import claude as claude_schema
from .utils.streams import iter_bytes_lines

logger = get_logger(__name__)

MalformedHandler = Callable[[MalformedMessage], Any]

_LINE_PREVIEW = 200


class MessagePump:
    """Reader and serialized writer for one process.

    ``iter_messages`` yields decoded records in arrival order and ends at EOF.
    ``send`` writes one record per line; concurrent callers are queued on a
    lock so two records never interleave.
    """

    def __init__(
        self,
        proc: ProcessHandle,
        *,
        tag: str = "claude",
        on_malformed: MalformedHandler | None = None,
    ) -> None:
        if proc.stdin is None or proc.stdout is None:
            raise SpawnError("agent process was started without stdin/stdout pipes")
        self._stdin = proc.stdin
        self._stdout = proc.stdout
        self._pid = proc.pid
        self._tag = tag
        self._on_malformed = on_malformed
        self._write_lock = anyio.Lock()
        self._input_closed = False

    @property
    def input_closed(self) -> bool:
        return self._input_closed

    async def iter_messages(self) -> AsyncIterator[claude_schema.StreamMessage]:
        async for raw_line in iter_bytes_lines(self._stdout):
            line = raw_line.strip()
            if not line:
                continue
            try:
                message = claude_schema.decode_stream_json_line(line)
            except msgspec.DecodeError as exc:
                text = line.decode("utf-8", errors="replace")
                logger.warning(
                    "jsonl.invalid",
                    tag=self._tag,
                    pid=self._pid,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                    line=text[:_LINE_PREVIEW],
                )
                if self._on_malformed is not None:
                    self._on_malformed(MalformedMessage(text, str(exc)))
                continue
            log_pipeline(
                logger,
                "jsonl.received",
                tag=self._tag,
                pid=self._pid,
                type=claude_schema.record_type(message),
            )
            yield message

    async def send(self, message: claude_schema.OutboundMessage) -> None:
        payload = claude_schema.encode_stream_json_line(message)
        async with self._write_lock:
            if self._input_closed:
                raise ClosedError("agent stdin is closed")
            try:
                await self._stdin.send(payload)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError, OSError) as exc:
                raise ClosedError(f"failed to write to agent stdin: {exc}") from exc
        log_pipeline(
            logger,
            "jsonl.sent",
            tag=self._tag,
            pid=self._pid,
            type=claude_schema.record_type(message),
            payload_len=len(payload),
        )

    async def close_input(self) -> None:
        async with self._write_lock:
            if self._input_closed:
                return
            self._input_closed = True
            with contextlib.suppress(anyio.ClosedResourceError, anyio.BrokenResourceError, OSError):
                await self._stdin.aclose()
        logger.debug("subprocess.stdin.closed", tag=self._tag, pid=self._pid)

