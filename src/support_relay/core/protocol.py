from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

from .errors import ProtocolError

CLOSE_UNAUTHORIZED = 4001
CLOSE_BLOCKED = 4002
CLOSE_SERVICE_RESTART = 1012
CLOSE_TRY_AGAIN_LATER = 1013

FRAME_INIT = "init"
FRAME_MESSAGE = "message"
FRAME_CHAT_MESSAGE = "chatMessage"
FRAME_HEARTBEAT = "heartbeat"

ENVELOPE_MESSAGE = "message"
ENVELOPE_MESSAGE_SENT = "message_sent"
ENVELOPE_ERROR = "error"
ENVELOPE_STATUS = "status"

SENDER_SUPPORT = "support"


@dataclass(frozen=True)
class InitFrame:
    client_id: str


@dataclass(frozen=True)
class MessageFrame:
    message: str


@dataclass(frozen=True)
class HeartbeatFrame:
    pass


ClientFrame = InitFrame | MessageFrame | HeartbeatFrame


def parse_client_frame(raw: str | bytes) -> ClientFrame:
    """Decode one browser-to-server JSON envelope."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("frame is not valid UTF-8") from exc
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ProtocolError("frame is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ProtocolError("frame must be a JSON object")
    frame_type = payload.get("type")
    if frame_type == FRAME_INIT:
        client_id = payload.get("clientId")
        if not isinstance(client_id, str) or not client_id.strip():
            raise ProtocolError("init frame requires a clientId")
        return InitFrame(client_id=client_id.strip())
    if frame_type in (FRAME_MESSAGE, FRAME_CHAT_MESSAGE):
        message = payload.get("message")
        if not isinstance(message, str):
            raise ProtocolError("message frame requires a message string")
        return MessageFrame(message=message)
    if frame_type == FRAME_HEARTBEAT:
        return HeartbeatFrame()
    raise ProtocolError(f"unknown frame type: {frame_type!r}")


def build_envelope(
    envelope_type: str,
    message: str,
    *,
    sender: Optional[str] = None,
    author: Optional[str] = None,
) -> dict[str, Any]:
    envelope: dict[str, Any] = {"type": envelope_type, "message": message}
    if sender is not None:
        envelope["sender"] = sender
    if author is not None:
        envelope["author"] = author
    return envelope


def encode_envelope(envelope: dict[str, Any]) -> str:
    return json.dumps(envelope, ensure_ascii=False)


def error_envelope(message: str) -> dict[str, Any]:
    return build_envelope(ENVELOPE_ERROR, message)


def status_envelope(message: str) -> dict[str, Any]:
    return build_envelope(ENVELOPE_STATUS, message)


def received_close_code(exc: BaseException) -> Optional[int]:
    """Close code the peer sent, read off a ``websockets`` ``ConnectionClosed``."""
    received = getattr(exc, "rcvd", None)
    code = getattr(received, "code", None)
    return code if isinstance(code, int) else None
