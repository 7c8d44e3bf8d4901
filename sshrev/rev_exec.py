"""Client side: ask an agent over its socket to run a command and relay its I/O."""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path
from typing import Union

from sshrev.rpc import (
    Cancelled,
    Event,
    Exec,
    ExecRequest,
    Exited,
    Request,
    StdinRequest,
    Stderr,
    Stdout,
    WatchRequest,
    build_request_message,
    parse_event,
)
from sshrev.ssh_agent import (
    SSH_AGENT_EXTENSION_FAILURE,
    SSH_AGENT_FAILURE,
    SSH_AGENT_SUCCESS,
    ProtocolError,
    read_message,
    write_message,
)

_STDIN_CHUNK = 256


def _emit(stream, data: bytes) -> None:
    stream.write(data)
    flush = getattr(stream, "flush", None)
    if flush is not None:
        flush()


class RevExec:
    """A connection to an agent that runs commands on the client's behalf."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    @classmethod
    async def open(cls, ssh_auth_sock: Union[str, Path]) -> RevExec:
        """Connect to the agent socket at ``ssh_auth_sock``."""
        reader, writer = await asyncio.open_unix_connection(os.fspath(ssh_auth_sock))
        return cls(reader, writer)

    async def __aenter__(self) -> RevExec:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the connection to the agent."""
        self._writer.close()
        with contextlib.suppress(Exception):
            await self._writer.wait_closed()

    async def exec(self, exec_request: Exec, stdin, stdout, stderr) -> int:
        """Run ``exec_request`` on the agent and return its exit code.

        ``stdin`` needs an awaitable ``read(n)``; ``stdout`` and ``stderr``
        are binary streams with ``write``.
        """
        await self._send(ExecRequest(exec_request))
        await self._recv()
        await self._send(WatchRequest())

        incoming = asyncio.ensure_future(self._incoming_loop(stdout, stderr))
        feeding = asyncio.ensure_future(self._stdin_loop(stdin))
        try:
            await asyncio.wait({incoming, feeding}, return_when=asyncio.FIRST_COMPLETED)
            if not incoming.done():
                feeding.result()
            return await incoming
        finally:
            for task in (incoming, feeding):
                task.cancel()
            await asyncio.gather(incoming, feeding, return_exceptions=True)

    async def _incoming_loop(self, stdout, stderr) -> int:
        while True:
            event = await self._recv()
            if event is None:
                continue
            if isinstance(event, Exited):
                return event.code
            if isinstance(event, Stdout):
                _emit(stdout, event.data)
            elif isinstance(event, Stderr):
                _emit(stderr, event.data)
            await self._send(WatchRequest())

    async def _stdin_loop(self, stdin) -> None:
        while True:
            data = bytes(await stdin.read(_STDIN_CHUNK))
            await self._send(StdinRequest(data))
            if not data:
                return

    async def _send(self, request: Request) -> None:
        await write_message(self._writer, build_request_message(request))

    async def _recv(self) -> Event | None:
        message = await read_message(self._reader)
        if message is None:
            raise ConnectionError("connection was closed unexpectedly")
        if message.message_type == SSH_AGENT_FAILURE:
            raise ProtocolError("SSH_AGENT_FAILURE")
        if message.message_type == SSH_AGENT_EXTENSION_FAILURE:
            raise ProtocolError("SSH_AGENT_EXTENSION_FAILURE")
        if message.message_type != SSH_AGENT_SUCCESS:
            raise ProtocolError(f"unknown message type: {message.message_type}")
        if not message.contents:
            return None
        return parse_event(message.contents)


__all__ = ["RevExec", "Cancelled"]