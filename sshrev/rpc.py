"""Requests and events carried inside the agent extension."""

from __future__ import annotations

import enum
import json
import struct
from dataclasses import dataclass, field
from typing import Union

from sshrev.ssh_agent import SSH_AGENTC_EXTENSION, Extension, Message, ProtocolError

EXTENSION_TYPE = b"[email]"

_I32 = struct.Struct(">i")


class OpCode(enum.IntEnum):
    EXEC = 0
    STDIN = 1
    WATCH = 2


class EventCode(enum.IntEnum):
    CANCELLED = 0
    STDOUT = 1
    STDERR = 2
    EXITED = 3


@dataclass
class Exec:
    """A command to run on the agent side."""

    cmd: str
    args: list[str] = field(default_factory=list)
    envs: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    def to_json(self) -> bytes:
        document = {"cmd": self.cmd, "args": list(self.args), "envs": dict(self.envs), "cwd": self.cwd}
        return json.dumps(document, separators=(",", ":")).encode()

    @classmethod
    def from_json(cls, data: bytes) -> Exec:
        try:
            document = json.loads(bytes(data))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ProtocolError(f"invalid exec request: {exc}") from exc
        if not isinstance(document, dict):
            raise ProtocolError("exec request must be a JSON object")
        for key in ("cmd", "args", "envs"):
            if key not in document:
                raise ProtocolError(f"exec request is missing field {key!r}")
        cmd, args, envs = document["cmd"], document["args"], document["envs"]
        cwd = document.get("cwd")
        if not isinstance(cmd, str):
            raise ProtocolError("cmd must be a string")
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ProtocolError("args must be a list of strings")
        if not isinstance(envs, dict) or not all(isinstance(v, str) for v in envs.values()):
            raise ProtocolError("envs must map strings to strings")
        if cwd is not None and not isinstance(cwd, str):
            raise ProtocolError("cwd must be a string or null")
        return cls(cmd, args, envs, cwd)


@dataclass(frozen=True)
class ExecRequest:
    exec: Exec

    def to_bytes(self) -> bytes:
        return bytes([OpCode.EXEC]) + self.exec.to_json()


@dataclass(frozen=True)
class StdinRequest:
    data: bytes = b""

    def to_bytes(self) -> bytes:
        return bytes([OpCode.STDIN]) + bytes(self.data)


@dataclass(frozen=True)
class WatchRequest:
    def to_bytes(self) -> bytes:
        return bytes([OpCode.WATCH])


Request = Union[ExecRequest, StdinRequest, WatchRequest]


def _split_code(data: bytes, codes: type[enum.IntEnum]) -> tuple[enum.IntEnum, bytes]:
    data = bytes(data)
    if not data:
        raise ProtocolError("content must not be empty")
    try:
        code = codes(data[0])
    except ValueError as exc:
        raise ProtocolError(f"unknown {codes.__name__} value: {data[0]}") from exc
    return code, data[1:]


def parse_request(data: bytes) -> Request:
    """Parse request bytes (opcode followed by payload)."""
    code, payload = _split_code(data, OpCode)
    if code is OpCode.EXEC:
        return ExecRequest(Exec.from_json(payload))
    if code is OpCode.STDIN:
        return StdinRequest(payload)
    return WatchRequest()


def build_request_message(request: Request) -> Message:
    """Wrap a request in an SSH_AGENTC_EXTENSION message."""
    ext = Extension(EXTENSION_TYPE, request.to_bytes())
    return Message(SSH_AGENTC_EXTENSION, ext.to_bytes())


@dataclass(frozen=True)
class Cancelled:
    def to_bytes(self) -> bytes:
        return bytes([EventCode.CANCELLED])


@dataclass(frozen=True)
class Stdout:
    data: bytes = b""

    def to_bytes(self) -> bytes:
        return bytes([EventCode.STDOUT]) + bytes(self.data)


@dataclass(frozen=True)
class Stderr:
    data: bytes = b""

    def to_bytes(self) -> bytes:
        return bytes([EventCode.STDERR]) + bytes(self.data)


@dataclass(frozen=True)
class Exited:
    code: int

    def to_bytes(self) -> bytes:
        return bytes([EventCode.EXITED]) + _I32.pack(self.code)


Event = Union[Cancelled, Stdout, Stderr, Exited]


def parse_event(data: bytes) -> Event:
    """Parse event bytes (event code followed by payload)."""
    code, payload = _split_code(data, EventCode)
    if code is EventCode.CANCELLED:
        return Cancelled()
    if code is EventCode.STDOUT:
        return Stdout(payload)
    if code is EventCode.STDERR:
        return Stderr(payload)
    if len(payload) < _I32.size:
        raise ProtocolError("malformed event: status code must be an i32")
    (status,) = _I32.unpack_from(payload)
    return Exited(status)