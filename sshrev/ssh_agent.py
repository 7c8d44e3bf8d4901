"""Wire format of the SSH agent protocol: framed messages and extensions."""

from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass

SSH_AGENT_FAILURE = 5
SSH_AGENT_SUCCESS = 6
SSH_AGENTC_EXTENSION = 27
SSH_AGENT_EXTENSION_FAILURE = 28

_LENGTH = struct.Struct(">I")


class ProtocolError(ValueError):
    """Raised when bytes on the wire do not form a valid message."""


@dataclass(frozen=True)
class Message:
    """One agent protocol message: a type byte followed by its contents."""

    message_type: int
    contents: bytes = b""

    @classmethod
    def failure(cls) -> Message:
        return cls(SSH_AGENT_FAILURE)

    @classmethod
    def extension_failure(cls) -> Message:
        return cls(SSH_AGENT_EXTENSION_FAILURE)

    def encode(self) -> bytes:
        """Return the framed message: big-endian length, type byte, contents."""
        body = bytes([self.message_type]) + bytes(self.contents)
        return _LENGTH.pack(len(body)) + body


@dataclass(frozen=True)
class Extension:
    """Contents of an SSH_AGENTC_EXTENSION message."""

    extension_type: bytes
    contents: bytes = b""

    @classmethod
    def from_bytes(cls, data: bytes) -> Extension:
        data = bytes(data)
        if len(data) < _LENGTH.size:
            raise ProtocolError("message contents is too short for extension")
        (type_len,) = _LENGTH.unpack_from(data)
        rest = data[_LENGTH.size:]
        if len(rest) < type_len:
            raise ProtocolError("length of extension type is mismatch")
        return cls(rest[:type_len], rest[type_len:])

    def to_bytes(self) -> bytes:
        ext_type = bytes(self.extension_type)
        return _LENGTH.pack(len(ext_type)) + ext_type + bytes(self.contents)


def decode_message(buffer: bytearray) -> Message | None:
    """Take one complete message off the front of ``buffer``.

    Returns None when the buffer does not yet hold a whole message; the
    buffer is then left untouched.
    """
    if len(buffer) < _LENGTH.size:
        return None
    (length,) = _LENGTH.unpack_from(buffer)
    if length == 0:
        raise ProtocolError("message length must not be zero")
    end = _LENGTH.size + length
    if len(buffer) < end:
        return None
    body = bytes(buffer[_LENGTH.size:end])
    del buffer[:end]
    return Message(body[0], body[1:])


async def read_message(reader: asyncio.StreamReader) -> Message | None:
    """Read one message from ``reader``; None on a clean end of stream."""
    try:
        header = await reader.readexactly(_LENGTH.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise ProtocolError("bytes remaining on stream") from exc
    (length,) = _LENGTH.unpack(header)
    if length == 0:
        raise ProtocolError("message length must not be zero")
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise ProtocolError("bytes remaining on stream") from exc
    return Message(body[0], body[1:])


async def write_message(writer: asyncio.StreamWriter, message: Message) -> None:
    """Write one framed message to ``writer`` and flush it."""
    writer.write(message.encode())
    await writer.drain()