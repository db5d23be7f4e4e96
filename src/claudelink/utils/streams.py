from __future__ import annotations

import sys
from collections import deque
from collections.abc import AsyncIterator, Callable
from typing import Any

import anyio
from anyio.abc import ByteReceiveStream
from anyio.streams.buffered import BufferedByteReceiveStream

from ..logging import log_pipeline

StderrHandler = Callable[[str], Any]


async def iter_bytes_lines(stream: ByteReceiveStream) -> AsyncIterator[bytes]:
    buffered = BufferedByteReceiveStream(stream)
    while True:
        try:
            line = await buffered.receive_until(b"\n", sys.maxsize)
        except (anyio.IncompleteRead, anyio.EndOfStream, anyio.ClosedResourceError):
            return
        yield line


STDERR_CAPTURE_MAX = 20


async def drain_stderr(
    stream: ByteReceiveStream,
    logger: Any,
    tag: str,
    *,
    handler: StderrHandler | None = None,
    capture: deque[str] | None = None,
) -> None:
    """Forward the CLI's diagnostic stream line by line without parsing it."""
    try:
        async for line in iter_bytes_lines(stream):
            text = line.decode("utf-8", errors="replace")
            log_pipeline(
                logger,
                "subprocess.stderr",
                tag=tag,
                line=text,
            )
            if capture is not None:
                capture.append(text)
            if handler is not None:
                handler(text)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "subprocess.stderr.error",
            tag=tag,
            error=str(exc),
            error_type=exc.__class__.__name__,
        )


def stderr_excerpt(lines: deque[str] | list[str] | None, *, limit: int = 5) -> str | None:
    if not lines:
        return None
    tail = [line.rstrip() for line in list(lines)[-limit:] if line.strip()]
    if not tail:
        return None
    return "stderr:\n" + "\n".join(tail)
