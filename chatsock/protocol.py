"""Chat message model, its wire format and shared helpers."""

from __future__ import annotations

import enum
import struct
import sys
import threading
import time
from dataclasses import dataclass, field

DEFAULT_PORT = 8080
MAX_CLIENTS = 50
BUFFER_SIZE = 1024
USERNAME_SIZE = 32
MESSAGE_SIZE = BUFFER_SIZE - USERNAME_SIZE - 64

CONNECTION_TIMEOUT = 30
KEEPALIVE_INTERVAL = 60

# type (int32), username, content, alignment padding, timestamp (int64), length (uint64)
_WIRE = struct.Struct(f"<i{USERNAME_SIZE}s{MESSAGE_SIZE}s4xqQ")
MESSAGE_STRUCT_SIZE = _WIRE.size

_USERNAME_CHARS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_"
)

_log_lock = threading.Lock()


class MessageType(enum.IntEnum):
    """Kinds of messages exchanged between client and server."""

    CONNECT = 0
    DISCONNECT = 1
    CHAT = 2
    NOTIFICATION = 3
    ERROR = 4
    KEEPALIVE = 5


class ProtocolError(ValueError):
    """Raised when bytes cannot be decoded into a chat message."""


def _truncate(text: str | None, size: int) -> str:
    """Fit text into a NUL-terminated field of ``size`` bytes."""
    if not text:
        return ""
    encoded = text.encode("utf-8")[: size - 1]
    return encoded.decode("utf-8", errors="ignore")


def _decode_field(raw: bytes) -> str:
    """Read a NUL-terminated string whose last byte is always treated as NUL."""
    raw = raw[:-1]
    end = raw.find(b"\x00")
    if end != -1:
        raw = raw[:end]
    return raw.decode("utf-8", errors="replace")


@dataclass
class ChatMessage:
    """A single chat message with its sender, text and send time."""

    type: MessageType
    username: str = ""
    content: str = ""
    timestamp: int = field(default_factory=lambda: int(time.time()))
    length: int = MESSAGE_STRUCT_SIZE

    @classmethod
    def create(cls, type, username=None, content=None) -> "ChatMessage":
        """Build a message stamped with the current time, truncating long fields."""
        return cls(
            type=MessageType(type),
            username=_truncate(username, USERNAME_SIZE),
            content=_truncate(content, MESSAGE_SIZE),
            timestamp=int(time.time()),
            length=MESSAGE_STRUCT_SIZE,
        )

    def to_bytes(self) -> bytes:
        """Encode the message into its fixed-size wire form."""
        try:
            return _WIRE.pack(
                int(self.type),
                _truncate(self.username, USERNAME_SIZE).encode("utf-8"),
                _truncate(self.content, MESSAGE_SIZE).encode("utf-8"),
                int(self.timestamp),
                int(self.length),
            )
        except struct.error as exc:
            raise ProtocolError(f"cannot encode message: {exc}") from exc

    @classmethod
    def from_bytes(cls, data) -> "ChatMessage":
        """Decode a message from the first MESSAGE_STRUCT_SIZE bytes of ``data``."""
        data = bytes(data)
        if len(data) < MESSAGE_STRUCT_SIZE:
            raise ProtocolError(
                f"message too short: {len(data)} bytes, need {MESSAGE_STRUCT_SIZE}"
            )
        type_value, raw_user, raw_content, timestamp, length = _WIRE.unpack_from(data)
        try:
            msg_type = MessageType(type_value)
        except ValueError as exc:
            raise ProtocolError(f"unknown message type {type_value}") from exc
        return cls(
            type=msg_type,
            username=_decode_field(raw_user),
            content=_decode_field(raw_content),
            timestamp=timestamp,
            length=length,
        )


def format_timestamp(timestamp) -> str:
    """Render a Unix timestamp as local time in the form ``[HH:MM:SS]``."""
    try:
        tm = time.localtime(timestamp)
    except (OverflowError, OSError, ValueError):
        return "[--:--:--]"
    return f"[{tm.tm_hour:02d}:{tm.tm_min:02d}:{tm.tm_sec:02d}]"


def validate_username(username) -> bool:
    """Accept non-empty names shorter than USERNAME_SIZE made of ASCII letters, digits and '_'."""
    if not username:
        return False
    if len(username) >= USERNAME_SIZE:
        return False
    return all(c in _USERNAME_CHARS for c in username)


def log(level, message) -> None:
    """Write a timestamped log line to standard output, one writer at a time."""
    with _log_lock:
        stamp = format_timestamp(time.time())
        sys.stdout.write(f"{stamp} [{level}] {message}\n")
        sys.stdout.flush()