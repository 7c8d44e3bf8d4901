"""Agent side: an SSH agent socket that also runs commands for remote clients.

Requests that carry the reverse-exec extension are handled here, by starting
a child process and relaying its input and output. Every other request is
forwarded to an upstream agent, when there is one.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path
from typing import Optional, Tuple, Union

from sshrev.rpc import (
    EXTENSION_TYPE,
    Cancelled,
    Event,
    Exec,
    ExecRequest,
    Exited,
    StdinRequest,
    Stderr,
    Stdout,
    WatchRequest,
    parse_request,
)
from sshrev.ssh_agent import (
    SSH_AGENT_SUCCESS,
    SSH_AGENTC_EXTENSION,
    Extension,
    Message,
    ProtocolError,
    read_message,
    write_message,
)

log = logging.getLogger(__name__)

_READ_SIZE = 4096

_Reply = "asyncio.Future[Message]"
_ExtItem = Optional[Tuple[bytes, "asyncio.Future[Message]"]]


def _settle(reply: asyncio.Future, message: Message) -> None:
    if not reply.done():
        reply.set_result(message)


def _abandon(reply: asyncio.Future) -> None:
    """Answer a request that will never be handled with a plain failure."""
    _settle(reply, Message.failure())


def _abandon_queued(queue: asyncio.Queue) -> None:
    while not queue.empty():
        item = queue.get_nowait()
        if item is not None:
            _abandon(item[1])


def _put(queue: asyncio.Queue, consumer: asyncio.Task, item) -> None:
    if consumer.done():
        raise ConnectionError("request handler has stopped")
    queue.put_nowait(item)


class _OutputPipe:
    """An output stream of the child with at most one read in flight.

    A read that is started and not yet consumed survives a cancelled watch,
    so no output is lost between watches.
    """

    def __init__(self, reader: asyncio.StreamReader, event_type: type) -> None:
        self._reader = reader
        self._event_type = event_type
        self._read: asyncio.Future | None = None

    def read(self) -> asyncio.Future:
        if self._read is None:
            self._read = asyncio.ensure_future(self._reader.read(_READ_SIZE))
        return self._read

    @property
    def ready(self) -> bool:
        return self._read is not None and self._read.done()

    def take(self) -> Union[Stdout, Stderr]:
        task, self._read = self._read, None
        return self._event_type(task.result())

    def cancel(self) -> None:
        if self._read is not None:
            self._read.cancel()
            self._read = None


class _Running:
    """A child process started by an exec request."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self.process = process
        self.stdin: asyncio.StreamWriter | None = process.stdin
        self.stdout: _OutputPipe | None = _OutputPipe(process.stdout, Stdout)
        self.stderr: _OutputPipe | None = _OutputPipe(process.stderr, Stderr)

    async def write_stdin(self, data: bytes) -> None:
        stdin = self.stdin
        if not data:
            self.stdin = None
            stdin.close()
            await stdin.wait_closed()
        else:
            stdin.write(data)
            await stdin.drain()

    async def watch(self) -> Event:
        """Wait for the next output chunk, or for the exit once output is done."""
        pipes = [pipe for pipe in (self.stdout, self.stderr) if pipe is not None]
        if not pipes:
            code = await self.process.wait()
            return Exited(code if code >= 0 else 0)
        await asyncio.wait([pipe.read() for pipe in pipes], return_when=asyncio.FIRST_COMPLETED)
        pipe = next(pipe for pipe in pipes if pipe.ready)
        event = pipe.take()
        if not event.data:
            if pipe is self.stdout:
                self.stdout = None
            else:
                self.stderr = None
        return event

    async def terminate(self) -> None:
        for pipe in (self.stdout, self.stderr):
            if pipe is not None:
                pipe.cancel()
        if self.stdin is not None:
            self.stdin.close()
            self.stdin = None
        if self.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
            await self.process.wait()


async def _spawn(exec_: Exec) -> asyncio.subprocess.Process:
    env = {**os.environ, **exec_.envs} if exec_.envs else None
    return await asyncio.create_subprocess_exec(
        exec_.cmd,
        *exec_.args,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=exec_.cwd,
        env=env,
    )


class _Connection:
    """One client connection: reading, routing, the extension and replying."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        upstream: tuple[asyncio.StreamReader, asyncio.StreamWriter] | None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._upstream = upstream
        self._replies: asyncio.Queue = asyncio.Queue()
        self._requests: asyncio.Queue = asyncio.Queue()
        self._ext_requests: asyncio.Queue = asyncio.Queue()

    async def run(self) -> None:
        self._reply_task = asyncio.ensure_future(self._reply_loop())
        self._router_task = asyncio.ensure_future(self._route())
        self._ext_task = asyncio.ensure_future(self._rev_ext())
        pipe_task = asyncio.ensure_future(self._pipe_loop())
        pending = {self._reply_task, self._router_task, self._ext_task, pipe_task}
        last_error: BaseException | None = None
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    error = task.exception()
                    if error is None:
                        return
                    log.debug("connection task failed: %r", error)
                    last_error = error
            raise last_error
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _reply_loop(self) -> None:
        while (reply := await self._replies.get()) is not None:
            await write_message(self._writer, await reply)

    async def _pipe_loop(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while (request := await read_message(self._reader)) is not None:
                reply = loop.create_future()
                _put(self._replies, self._reply_task, reply)
                try:
                    _put(self._requests, self._router_task, (request, reply))
                except ConnectionError:
                    _abandon(reply)
                    raise
        finally:
            self._replies.put_nowait(None)
            self._requests.put_nowait(None)

    async def _route(self) -> None:
        current: asyncio.Future | None = None
        try:
            while (item := await self._requests.get()) is not None:
                request, current = item
                await self._handle_request(request, current)
                current = None
        finally:
            if current is not None:
                _abandon(current)
            _abandon_queued(self._requests)
            self._ext_requests.put_nowait(None)

    async def _handle_request(self, request: Message, reply: asyncio.Future) -> None:
        if request.message_type != SSH_AGENTC_EXTENSION:
            await self._forward_to_upstream(request, reply)
            return
        try:
            ext = Extension.from_bytes(request.contents)
        except ProtocolError:
            _settle(reply, Message.failure())
            return
        if ext.extension_type != EXTENSION_TYPE:
            _settle(reply, Message.failure())
            return
        _put(self._ext_requests, self._ext_task, (ext.contents, reply))

    async def _forward_to_upstream(self, request: Message, reply: asyncio.Future) -> None:
        if self._upstream is None:
            _settle(reply, Message.failure())
            return
        upstream_reader, upstream_writer = self._upstream
        await write_message(upstream_writer, request)
        answer = await read_message(upstream_reader)
        if answer is None:
            raise ConnectionError("upstream agent has gone")
        _settle(reply, answer)

    async def _rev_ext(self) -> None:
        running: _Running | None = None
        try:
            running = await self._handle_exec()
            if running is not None:
                await self._handle_stdin_watch(running)
        finally:
            _abandon_queued(self._ext_requests)
            if running is not None:
                await running.terminate()

    async def _handle_exec(self) -> _Running | None:
        while (item := await self._ext_requests.get()) is not None:
            data, reply = item
            try:
                request = parse_request(data)
            except ProtocolError:
                request = None
            if not isinstance(request, ExecRequest):
                _settle(reply, Message.extension_failure())
                continue
            try:
                process = await _spawn(request.exec)
            except BaseException:
                _abandon(reply)
                raise
            _settle(reply, Message(SSH_AGENT_SUCCESS))
            return _Running(process)
        return None

    async def _handle_stdin_watch(self, running: _Running) -> None:
        pending: _ExtItem = None
        while True:
            item = pending if pending is not None else await self._ext_requests.get()
            pending = None
            if item is None:
                return
            data, reply = item
            try:
                pending = await self._answer(running, data, reply)
            except BaseException:
                _abandon(reply)
                raise

    async def _answer(self, running: _Running, data: bytes, reply: asyncio.Future) -> _ExtItem:
        try:
            request = parse_request(data)
        except ProtocolError:
            _settle(reply, Message.extension_failure())
            return None
        if isinstance(request, StdinRequest):
            if running.stdin is None:
                _settle(reply, Message.extension_failure())
                return None
            await running.write_stdin(request.data)
            _settle(reply, Message(SSH_AGENT_SUCCESS))
            return None
        if isinstance(request, WatchRequest):
            return await self._watch(running, reply)
        _settle(reply, Message.extension_failure())
        return None

    async def _watch(self, running: _Running, reply: asyncio.Future) -> _ExtItem:
        """Wait for an event, or stop early when the next request arrives."""
        watch = asyncio.ensure_future(running.watch())
        peek = asyncio.ensure_future(self._ext_requests.get())
        try:
            await asyncio.wait({watch, peek}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            watch.cancel()
            peek.cancel()
            raise

        if watch.done():
            peeked: _ExtItem = None
            if peek.done():
                peeked = self._take_peeked(peek)
            else:
                peek.cancel()
            error = watch.exception()
            if error is not None:
                log.debug("watch failed: %r", error)
                _settle(reply, Message.extension_failure())
            else:
                _settle(reply, Message(SSH_AGENT_SUCCESS, watch.result().to_bytes()))
            return peeked

        watch.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watch
        _settle(reply, Message(SSH_AGENT_SUCCESS, Cancelled().to_bytes()))
        return self._take_peeked(peek)

    def _take_peeked(self, peek: asyncio.Future) -> _ExtItem:
        item = peek.result()
        if item is None:
            # The stream of requests has ended; leave the marker for the loop.
            self._ext_requests.put_nowait(None)
        return item


class RevAgent:
    """Listens on a Unix socket and serves agent clients."""

    def __init__(
        self,
        listen_sock_path: Union[str, Path],
        upstream_sock_path: Union[str, Path, None] = None,
    ) -> None:
        self.listen_sock_path = Path(listen_sock_path)
        self.upstream_sock_path = None if upstream_sock_path is None else Path(upstream_sock_path)
        self._server: asyncio.AbstractServer | None = None
        self._clients: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Bind the listening socket."""
        log.debug("opening agent socket at %s", self.listen_sock_path)
        self._server = await asyncio.start_unix_server(
            self._serve_client, path=str(self.listen_sock_path)
        )

    async def run(self) -> None:
        """Serve clients until cancelled, binding the socket first if needed."""
        if self._server is None:
            await self.start()
        await self._server.serve_forever()

    async def close(self) -> None:
        """Stop listening and end every client connection."""
        server, self._server = self._server, None
        if server is not None:
            server.close()
        clients = list(self._clients)
        for task in clients:
            task.cancel()
        await asyncio.gather(*clients, return_exceptions=True)
        if server is not None:
            await server.wait_closed()

    async def _serve_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._clients.add(task)
        try:
            await self.handle_client(reader, writer)
        except Exception:
            log.exception("client connection failed")
        finally:
            self._clients.discard(task)

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Serve one client connection until it ends."""
        upstream = None
        try:
            if self.upstream_sock_path is not None:
                upstream = await asyncio.open_unix_connection(str(self.upstream_sock_path))
            await _Connection(reader, writer, upstream).run()
        finally:
            writers = [writer] if upstream is None else [writer, upstream[1]]
            for stream in writers:
                stream.close()
                with contextlib.suppress(Exception):
                    await stream.wait_closed()