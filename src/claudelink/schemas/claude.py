"""msgspec models for the claude CLI stream-json protocol.

Inbound records are decoded with :func:`decode_stream_json_line`; outbound
records are encoded with :func:`encode_stream_json_line`.
"""

from __future__ import annotations

from typing import Any, Literal, TypeAlias

import msgspec

# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class _Block(msgspec.Struct, tag_field="type", kw_only=True):
    pass


class StreamTextBlock(_Block, tag="text"):
    text: str


class StreamThinkingBlock(_Block, tag="thinking"):
    thinking: str
    signature: str | None = None


class StreamRedactedThinkingBlock(_Block, tag="redacted_thinking"):
    data: str = ""


class StreamToolUseBlock(_Block, tag="tool_use"):
    id: str
    name: str
    input: dict[str, Any] = msgspec.field(default_factory=dict)


class StreamServerToolUseBlock(_Block, tag="server_tool_use"):
    id: str
    name: str
    input: dict[str, Any] = msgspec.field(default_factory=dict)


class StreamToolResultBlock(_Block, tag="tool_result"):
    tool_use_id: str
    content: str | list[dict[str, Any]] | None = None
    is_error: bool | None = None


class StreamImageBlock(_Block, tag="image"):
    source: dict[str, Any] = msgspec.field(default_factory=dict)


StreamContentBlock: TypeAlias = (
    StreamTextBlock
    | StreamThinkingBlock
    | StreamRedactedThinkingBlock
    | StreamToolUseBlock
    | StreamServerToolUseBlock
    | StreamToolResultBlock
    | StreamImageBlock
)

BLOCK_TYPES = frozenset(
    {
        "text",
        "thinking",
        "redacted_thinking",
        "tool_use",
        "server_tool_use",
        "tool_result",
        "image",
    }
)


class StreamUnknownBlock(msgspec.Struct, kw_only=True):
    """A content block with an unrecognised ``type``, kept as raw JSON.

    Only produced by :func:`decode_stream_json_line`, which falls back to
    decoding blocks one at a time when a message carries one of these.
    """

    type: str
    raw: dict[str, Any] = msgspec.field(default_factory=dict)


class StreamAssistantMessageBody(msgspec.Struct, kw_only=True):
    role: str = "assistant"
    # May also hold StreamUnknownBlock, see decode_stream_json_line.
    content: list[StreamContentBlock] = msgspec.field(default_factory=list)
    id: str | None = None
    model: str | None = None
    stop_reason: str | None = None
    usage: dict[str, Any] | None = None


class StreamUserMessageBody(msgspec.Struct, kw_only=True):
    role: str = "user"
    content: str | list[StreamContentBlock] = ""


# ---------------------------------------------------------------------------
# Control protocol payloads
# ---------------------------------------------------------------------------


class _ControlRequestBase(
    msgspec.Struct, tag_field="subtype", kw_only=True, omit_defaults=True
):
    pass


class ControlCanUseToolRequest(_ControlRequestBase, tag="can_use_tool"):
    tool_name: str
    input: dict[str, Any] = msgspec.field(default_factory=dict)
    tool_use_id: str | None = None
    permission_suggestions: list[dict[str, Any]] | None = None
    blocked_path: str | None = None
    decision_reason: str | None = None
    agent_id: str | None = None


class ControlHookCallbackRequest(_ControlRequestBase, tag="hook_callback"):
    callback_id: str
    input: dict[str, Any] = msgspec.field(default_factory=dict)
    tool_use_id: str | None = None


class ControlInitializeRequest(_ControlRequestBase, tag="initialize"):
    hooks: dict[str, Any] | None = None
    systemPrompt: str | None = None
    appendSystemPrompt: str | None = None
    agents: dict[str, Any] | None = None


class ControlInterruptRequest(_ControlRequestBase, tag="interrupt"):
    pass


class ControlSetPermissionModeRequest(_ControlRequestBase, tag="set_permission_mode"):
    mode: str


class ControlSetModelRequest(_ControlRequestBase, tag="set_model"):
    model: str | None = None


class ControlSetMaxThinkingTokensRequest(
    _ControlRequestBase, tag="set_max_thinking_tokens"
):
    # Required so that an explicit null is written on the wire.
    max_thinking_tokens: int | None


class ControlMcpStatusRequest(_ControlRequestBase, tag="mcp_status"):
    pass


class ControlMcpMessageRequest(_ControlRequestBase, tag="mcp_message"):
    server_name: str
    message: dict[str, Any] = msgspec.field(default_factory=dict)


class ControlRewindFilesRequest(_ControlRequestBase, tag="rewind_files"):
    user_message_id: str
    dry_run: bool | None = None


class ControlMcpSetServersRequest(_ControlRequestBase, tag="mcp_set_servers"):
    servers: dict[str, Any] = msgspec.field(default_factory=dict)


class ControlMcpReconnectRequest(_ControlRequestBase, tag="mcp_reconnect"):
    serverName: str


class ControlMcpToggleRequest(_ControlRequestBase, tag="mcp_toggle"):
    serverName: str
    enabled: bool


class ControlUnknownRequest(msgspec.Struct, kw_only=True):
    """An inbound request whose subtype (or shape) is not recognised."""

    subtype: str
    payload: dict[str, Any] = msgspec.field(default_factory=dict)


ControlRequest: TypeAlias = (
    ControlCanUseToolRequest
    | ControlHookCallbackRequest
    | ControlInitializeRequest
    | ControlInterruptRequest
    | ControlSetPermissionModeRequest
    | ControlSetModelRequest
    | ControlSetMaxThinkingTokensRequest
    | ControlMcpStatusRequest
    | ControlMcpMessageRequest
    | ControlRewindFilesRequest
    | ControlMcpSetServersRequest
    | ControlMcpReconnectRequest
    | ControlMcpToggleRequest
)


class _ControlResponseBase(msgspec.Struct, tag_field="subtype", kw_only=True):
    request_id: str


class ControlResponseSuccess(_ControlResponseBase, tag="success"):
    response: dict[str, Any] | None = None


class ControlResponseError(_ControlResponseBase, tag="error"):
    error: str = ""


ControlResponse: TypeAlias = ControlResponseSuccess | ControlResponseError


# ---------------------------------------------------------------------------
# Top-level stream records
# ---------------------------------------------------------------------------


class _StreamBase(msgspec.Struct, tag_field="type", kw_only=True):
    pass


class StreamSystemMessage(_StreamBase, tag="system"):
    subtype: str
    session_id: str | None = None
    uuid: str | None = None
    cwd: str | None = None
    model: str | None = None
    tools: list[str] | None = None
    mcp_servers: list[dict[str, Any]] | None = None
    permissionMode: str | None = None
    slash_commands: list[str] | None = None
    apiKeySource: str | None = None
    output_style: str | None = None
    agents: list[str] | None = None
    skills: list[str] | None = None
    plugins: list[dict[str, Any]] | None = None


class StreamUserMessage(_StreamBase, tag="user"):
    message: StreamUserMessageBody
    session_id: str | None = None
    uuid: str | None = None
    parent_tool_use_id: str | None = None
    isSynthetic: bool | None = None


class StreamAssistantMessage(_StreamBase, tag="assistant"):
    message: StreamAssistantMessageBody
    session_id: str | None = None
    uuid: str | None = None
    parent_tool_use_id: str | None = None
    error: str | None = None


ResultOutcome = Literal["success", "max_turns", "error"]


class StreamResultMessage(_StreamBase, tag="result"):
    subtype: str
    session_id: str | None = None
    is_error: bool = False
    uuid: str | None = None
    duration_ms: int | None = None
    duration_api_ms: int | None = None
    num_turns: int = 0
    result: str | None = None
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None
    modelUsage: dict[str, Any] | None = None
    permission_denials: list[dict[str, Any]] | None = None
    structured_output: Any = None

    @property
    def outcome(self) -> ResultOutcome:
        if self.subtype == "error_max_turns":
            return "max_turns"
        if self.is_error or self.subtype != "success":
            return "error"
        return "success"


class StreamEventMessage(_StreamBase, tag="stream_event"):
    event: dict[str, Any]
    session_id: str | None = None
    uuid: str | None = None
    parent_tool_use_id: str | None = None


class RateLimitInfo(msgspec.Struct, kw_only=True):
    requests_limit: int | None = None
    requests_remaining: int | None = None
    requests_reset: str | None = None
    tokens_limit: int | None = None
    tokens_remaining: int | None = None
    tokens_reset: str | None = None
    retry_after_ms: int | None = None


class StreamRateLimitMessage(_StreamBase, tag="rate_limit_event"):
    rate_limit_info: RateLimitInfo | None = None
    session_id: str | None = None
    uuid: str | None = None


class StreamControlRequest(_StreamBase, tag="control_request"):
    request_id: str
    request: ControlRequest


class StreamControlResponse(_StreamBase, tag="control_response"):
    response: ControlResponse


class StreamUnknownMessage(msgspec.Struct, kw_only=True):
    """A record with an unrecognised ``type``; delivered as-is."""

    type: str
    raw: dict[str, Any] = msgspec.field(default_factory=dict)

    @property
    def session_id(self) -> str | None:
        value = self.raw.get("session_id")
        return value if isinstance(value, str) else None


StreamJsonMessage: TypeAlias = (
    StreamSystemMessage
    | StreamUserMessage
    | StreamAssistantMessage
    | StreamResultMessage
    | StreamEventMessage
    | StreamRateLimitMessage
    | StreamControlRequest
    | StreamControlResponse
)

StreamMessage: TypeAlias = StreamJsonMessage | StreamUnknownMessage

KNOWN_TYPES = frozenset(
    {
        "system",
        "user",
        "assistant",
        "result",
        "stream_event",
        "rate_limit_event",
        "control_request",
        "control_response",
    }
)


# ---------------------------------------------------------------------------
# Outbound records
# ---------------------------------------------------------------------------


class OutboundUserMessage(msgspec.Struct, tag="user", tag_field="type", kw_only=True):
    message: dict[str, Any]
    session_id: str = ""
    parent_tool_use_id: str | None = None


OutboundMessage: TypeAlias = (
    OutboundUserMessage | StreamControlRequest | StreamControlResponse
)


def user_message(
    content: str | list[dict[str, Any]],
    *,
    session_id: str = "",
    parent_tool_use_id: str | None = None,
) -> OutboundUserMessage:
    if isinstance(content, str):
        content = [{"type": "text", "text": content}]
    return OutboundUserMessage(
        message={"role": "user", "content": content},
        session_id=session_id,
        parent_tool_use_id=parent_tool_use_id,
    )


# ---------------------------------------------------------------------------
# Initialize handshake result
# ---------------------------------------------------------------------------


class SlashCommand(msgspec.Struct, kw_only=True):
    name: str
    description: str = ""
    argumentHint: str = ""


class ModelInfo(msgspec.Struct, kw_only=True):
    value: str
    displayName: str = ""
    description: str = ""


class InitializeResult(msgspec.Struct, kw_only=True):
    commands: list[SlashCommand] = msgspec.field(default_factory=list)
    models: list[ModelInfo] = msgspec.field(default_factory=list)
    account: dict[str, Any] | None = None
    output_style: str | None = None
    available_output_styles: list[str] = msgspec.field(default_factory=list)


def decode_initialize_result(payload: dict[str, Any] | None) -> InitializeResult:
    return msgspec.convert(payload or {}, type=InitializeResult, strict=False)


# ---------------------------------------------------------------------------
# Line codec
# ---------------------------------------------------------------------------

_DECODER = msgspec.json.Decoder(StreamJsonMessage)
_ENCODER = msgspec.json.Encoder()


def _decode_control_request(raw: dict[str, Any]) -> StreamControlRequest:
    request_id = raw.get("request_id")
    if not isinstance(request_id, str) or not request_id:
        raise msgspec.ValidationError("control_request is missing `request_id`")
    request = raw.get("request")
    if not isinstance(request, dict):
        request = {}
    try:
        inner: Any = msgspec.convert(request, type=ControlRequest)
    except msgspec.ValidationError:
        inner = ControlUnknownRequest(
            subtype=str(request.get("subtype", "")),
            payload=request,
        )
    return StreamControlRequest(request_id=request_id, request=inner)


def _decode_block(block: Any) -> Any:
    kind = block.get("type") if isinstance(block, dict) else None
    if kind in BLOCK_TYPES:
        return msgspec.convert(block, type=StreamContentBlock)
    raw = block if isinstance(block, dict) else {"value": block}
    return StreamUnknownBlock(type=kind if isinstance(kind, str) else "", raw=raw)


def _decode_with_unknown_blocks(raw: dict[str, Any]) -> StreamMessage | None:
    body = raw.get("message")
    content = body.get("content") if isinstance(body, dict) else None
    if not isinstance(content, list) or all(
        isinstance(block, dict) and block.get("type") in BLOCK_TYPES for block in content
    ):
        return None
    # Decode the envelope without blocks, then splice the blocks back in order.
    decoded = msgspec.convert(
        {**raw, "message": {**body, "content": []}}, type=StreamJsonMessage
    )
    blocks = [_decode_block(block) for block in content]
    message = msgspec.structs.replace(decoded.message, content=blocks)
    return msgspec.structs.replace(decoded, message=message)


def decode_stream_json_line(line: bytes | str) -> StreamMessage:
    """Decode one stream-json line.

    Raises ``msgspec.DecodeError`` for invalid JSON and
    ``msgspec.ValidationError`` for a known record type with a bad shape.
    Content blocks of an unrecognised type decode as
    :class:`StreamUnknownBlock` rather than failing the whole message.
    """
    try:
        return _DECODER.decode(line)
    except msgspec.ValidationError:
        raw = msgspec.json.decode(line)
        if not isinstance(raw, dict):
            raise
        kind = raw.get("type")
        if kind == "control_request":
            return _decode_control_request(raw)
        if kind in ("assistant", "user"):
            recovered = _decode_with_unknown_blocks(raw)
            if recovered is not None:
                return recovered
        if isinstance(kind, str) and kind not in KNOWN_TYPES:
            return StreamUnknownMessage(type=kind, raw=raw)
        raise


def encode_stream_json_line(message: OutboundMessage) -> bytes:
    return _ENCODER.encode(message) + b"\n"


def record_type(message: Any) -> str:
    """The wire ``type`` of a decoded or outbound record."""
    if isinstance(message, (StreamUnknownMessage, StreamUnknownBlock)):
        return message.type
    config = getattr(message, "__struct_config__", None)
    tag = getattr(config, "tag", None)
    if isinstance(tag, str):
        return tag
    return type(message).__name__


def request_subtype(request: Any) -> str:
    if isinstance(request, ControlUnknownRequest):
        return request.subtype
    return record_type(request)
