from __future__ import annotations

import json

import anyio
import pytest

from claudelink.errors import ClosedError, MalformedMessage, SpawnError
from claudelink.pump import MessagePump
from claudelink.schemas import claude as claude_schema
from tests.fakes import FakeClaude


class _RecordingStdin:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []

    async def send(self, item: bytes) -> None:
        # Yield mid-write so an unserialized writer would interleave.
        half = len(item) // 2
        self.chunks.append(item[:half])
        await anyio.sleep(0)
        self.chunks.append(item[half:])

    async def aclose(self) -> None:
        return None


async def _collect(pump: MessagePump) -> list[claude_schema.StreamMessage]:
    return [message async for message in pump.iter_messages()]


@pytest.mark.anyio
async def test_malformed_line_is_reported_and_skipped() -> None:
    proc = FakeClaude()
    reported: list[MalformedMessage] = []
    pump = MessagePump(proc, on_malformed=reported.append)

    proc.emit_assistant_text("first")
    proc.emit_raw(b"{not json")
    proc.emit_raw(b"")
    proc.emit_assistant_text("second")
    proc.exit(0)

    messages = await _collect(pump)

    texts = []
    for message in messages:
        assert isinstance(message, claude_schema.StreamAssistantMessage)
        block = message.message.content[0]
        assert isinstance(block, claude_schema.StreamTextBlock)
        texts.append(block.text)
    assert texts == ["first", "second"]
    assert len(reported) == 1
    assert reported[0].line == "{not json"


@pytest.mark.anyio
async def test_unknown_content_block_is_delivered() -> None:
    proc = FakeClaude()
    reported: list[MalformedMessage] = []
    pump = MessagePump(proc, on_malformed=reported.append)

    proc.emit(
        {
            "type": "assistant",
            "session_id": proc.session_id,
            "message": {
                "role": "assistant",
                "content": [
                    {"type": "mcp_tool_use", "id": "mcptoolu_1", "name": "search"},
                    {"type": "text", "text": "done"},
                ],
            },
        }
    )
    proc.emit_assistant_text("after")
    proc.exit(0)

    messages = await _collect(pump)

    assert reported == []
    assert len(messages) == 2
    first = messages[0]
    assert isinstance(first, claude_schema.StreamAssistantMessage)
    assert [claude_schema.record_type(block) for block in first.message.content] == [
        "mcp_tool_use",
        "text",
    ]


@pytest.mark.anyio
async def test_iteration_ends_cleanly_at_eof() -> None:
    proc = FakeClaude()
    pump = MessagePump(proc)
    proc.exit(0)

    assert await _collect(pump) == []


@pytest.mark.anyio
async def test_concurrent_sends_do_not_interleave() -> None:
    proc = FakeClaude()
    stdin = _RecordingStdin()
    proc.stdin = stdin  # type: ignore[assignment]
    pump = MessagePump(proc)

    async with anyio.create_task_group() as tg:
        for index in range(5):
            tg.start_soon(pump.send, claude_schema.user_message(f"turn {index}"))

    lines = b"".join(stdin.chunks).splitlines()
    assert len(lines) == 5
    texts = sorted(json.loads(line)["message"]["content"][0]["text"] for line in lines)
    assert texts == [f"turn {index}" for index in range(5)]


@pytest.mark.anyio
async def test_send_after_close_input_raises() -> None:
    proc = FakeClaude(exit_on_stdin_close=False)
    pump = MessagePump(proc)

    await pump.close_input()
    await pump.close_input()

    assert pump.input_closed
    assert proc.stdin.closed
    with pytest.raises(ClosedError):
        await pump.send(claude_schema.user_message("late"))


@pytest.mark.anyio
async def test_write_failure_becomes_closed_error() -> None:
    proc = FakeClaude(exit_on_stdin_close=False)
    proc.stdin.closed = True
    pump = MessagePump(proc)

    with pytest.raises(ClosedError):
        await pump.send(claude_schema.user_message("hello"))


def test_missing_pipes_are_rejected() -> None:
    proc = FakeClaude()
    proc.stdout = None  # type: ignore[assignment]

    with pytest.raises(SpawnError):
        MessagePump(proc)
