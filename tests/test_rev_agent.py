import asyncio
import contextlib
import os
import stat
import sys
import tempfile
from pathlib import Path

import pytest

from sshrev.rev_agent import RevAgent
from sshrev.rpc import (
    EXTENSION_TYPE,
    Cancelled,
    Exec,
    ExecRequest,
    Exited,
    OpCode,
    StdinRequest,
    Stderr,
    Stdout,
    WatchRequest,
    build_request_message,
    parse_event,
)
from sshrev.ssh_agent import (
    SSH_AGENT_SUCCESS,
    SSH_AGENTC_EXTENSION,
    Extension,
    Message,
    read_message,
    write_message,
)

TIMEOUT = 15


@pytest.fixture
def sock_dir():
    with tempfile.TemporaryDirectory(prefix="sr") as path:
        yield Path(path)


@contextlib.asynccontextmanager
async def connected_agent(sock_dir, upstream=None):
    path = sock_dir / "agent.sock"
    agent = RevAgent(path, upstream)
    await agent.start()
    reader, writer = await asyncio.open_unix_connection(str(path))
    try:
        yield reader, writer
    finally:
        writer.close()
        with contextlib.suppress(Exception):
            await writer.wait_closed()
        await agent.close()


async def receive(reader):
    return await asyncio.wait_for(read_message(reader), TIMEOUT)


async def roundtrip(reader, writer, message):
    await write_message(writer, message)
    return await receive(reader)


async def send_request(reader, writer, request):
    return await roundtrip(reader, writer, build_request_message(request))


async def collect_output(reader, writer):
    stdout = bytearray()
    stderr = bytearray()
    while True:
        reply = await send_request(reader, writer, WatchRequest())
        assert reply.message_type == SSH_AGENT_SUCCESS
        event = parse_event(reply.contents)
        if isinstance(event, Stdout):
            stdout += event.data
        elif isinstance(event, Stderr):
            stderr += event.data
        elif isinstance(event, Exited):
            return bytes(stdout), bytes(stderr), event.code


def python_exec(script, **kwargs):
    return Exec(sys.executable, ["-c", script], **kwargs)


@pytest.mark.asyncio
async def test_plain_request_without_upstream_fails(sock_dir):
    async with connected_agent(sock_dir) as (reader, writer):
        reply = await roundtrip(reader, writer, Message(11))
    assert reply == Message.failure()


@pytest.mark.asyncio
async def test_foreign_extension_type_fails(sock_dir):
    message = Message(SSH_AGENTC_EXTENSION, Extension(b"other@example.com", b"\x02").to_bytes())
    async with connected_agent(sock_dir) as (reader, writer):
        reply = await roundtrip(reader, writer, message)
    assert reply == Message.failure()


@pytest.mark.asyncio
async def test_truncated_extension_fails(sock_dir):
    async with connected_agent(sock_dir) as (reader, writer):
        reply = await roundtrip(reader, writer, Message(SSH_AGENTC_EXTENSION, b"\x00\x00"))
    assert reply == Message.failure()


@pytest.mark.asyncio
async def test_requests_are_forwarded_to_upstream(sock_dir):
    received = []

    async def upstream_handler(reader, writer):
        while (message := await read_message(reader)) is not None:
            received.append(message)
            await write_message(writer, Message(12, b"identities"))
        writer.close()

    upstream_path = sock_dir / "upstream.sock"
    server = await asyncio.start_unix_server(upstream_handler, path=str(upstream_path))
    try:
        async with connected_agent(sock_dir, upstream_path) as (reader, writer):
            first = await roundtrip(reader, writer, Message(11))
            second = await roundtrip(reader, writer, Message(13, b"sign"))
    finally:
        server.close()
        await server.wait_closed()
    assert first == Message(12, b"identities")
    assert second == Message(12, b"identities")
    assert received == [Message(11), Message(13, b"sign")]


@pytest.mark.asyncio
async def test_upstream_that_goes_away_gives_failure(sock_dir):
    async def upstream_handler(reader, writer):
        await read_message(reader)
        writer.close()

    upstream_path = sock_dir / "upstream.sock"
    server = await asyncio.start_unix_server(upstream_handler, path=str(upstream_path))
    try:
        async with connected_agent(sock_dir, upstream_path) as (reader, writer):
            reply = await roundtrip(reader, writer, Message(11))
    finally:
        server.close()
        await server.wait_closed()
    assert reply == Message.failure()


@pytest.mark.asyncio
async def test_stdin_and_watch_before_exec_fail(sock_dir):
    async with connected_agent(sock_dir) as (reader, writer):
        stdin_reply = await send_request(reader, writer, StdinRequest(b"data"))
        watch_reply = await send_request(reader, writer, WatchRequest())
    assert stdin_reply == Message.extension_failure()
    assert watch_reply == Message.extension_failure()


@pytest.mark.asyncio
async def test_exec_with_invalid_json_fails(sock_dir):
    payload = bytes([OpCode.EXEC]) + b"{not json"
    message = Message(SSH_AGENTC_EXTENSION, Extension(EXTENSION_TYPE, payload).to_bytes())
    async with connected_agent(sock_dir) as (reader, writer):
        reply = await roundtrip(reader, writer, message)
    assert reply == Message.extension_failure()


@pytest.mark.asyncio
async def test_exec_of_missing_command_fails(sock_dir):
    missing = str(sock_dir / "no-such-command")
    async with connected_agent(sock_dir) as (reader, writer):
        reply = await send_request(reader, writer, ExecRequest(Exec(missing)))
    assert reply == Message.failure()


@pytest.mark.asyncio
async def test_exec_relays_output_and_exit_code(sock_dir):
    script = "import sys; sys.stdout.write('out'); sys.stderr.write('err'); sys.exit(3)"
    async with connected_agent(sock_dir) as (reader, writer):
        reply = await send_request(reader, writer, ExecRequest(python_exec(script)))
        assert reply == Message(SSH_AGENT_SUCCESS)
        stdout, stderr, code = await collect_output(reader, writer)
    assert stdout == b"out"
    assert stderr == b"err"
    assert code == 3


@pytest.mark.asyncio
async def test_second_exec_is_rejected(sock_dir):
    script = "import sys; sys.stdin.read()"
    async with connected_agent(sock_dir) as (reader, writer):
        first = await send_request(reader, writer, ExecRequest(python_exec(script)))
        second = await send_request(reader, writer, ExecRequest(python_exec(script)))
    assert first == Message(SSH_AGENT_SUCCESS)
    assert second == Message.extension_failure()


@pytest.mark.asyncio
async def test_stdin_is_delivered_and_closed(sock_dir):
    script = "import sys; sys.stdout.write(sys.stdin.read())"
    async with connected_agent(sock_dir) as (reader, writer):
        await send_request(reader, writer, ExecRequest(python_exec(script)))
        data_reply = await send_request(reader, writer, StdinRequest(b"ping"))
        close_reply = await send_request(reader, writer, StdinRequest(b""))
        late_reply = await send_request(reader, writer, StdinRequest(b"late"))
        stdout, stderr, code = await collect_output(reader, writer)
    assert data_reply == Message(SSH_AGENT_SUCCESS)
    assert close_reply == Message(SSH_AGENT_SUCCESS)
    assert late_reply == Message.extension_failure()
    assert (stdout, stderr, code) == (b"ping", b"", 0)


@pytest.mark.asyncio
async def test_pending_watch_is_cancelled_by_next_request(sock_dir):
    script = (
        "import sys; sys.stdout.write(sys.stdin.readline()); "
        "sys.stdout.flush(); sys.stdin.read()"
    )
    async with connected_agent(sock_dir) as (reader, writer):
        await send_request(reader, writer, ExecRequest(python_exec(script)))
        await write_message(writer, build_request_message(WatchRequest()))
        await write_message(writer, build_request_message(StdinRequest(b"line\n")))
        watch_reply = await receive(reader)
        stdin_reply = await receive(reader)
        close_reply = await send_request(reader, writer, StdinRequest(b""))
        stdout, stderr, code = await collect_output(reader, writer)
    assert watch_reply.message_type == SSH_AGENT_SUCCESS
    assert parse_event(watch_reply.contents) == Cancelled()
    assert stdin_reply == Message(SSH_AGENT_SUCCESS)
    assert close_reply == Message(SSH_AGENT_SUCCESS)
    assert (stdout, code) == (b"line\n", 0)


@pytest.mark.asyncio
async def test_exec_honours_cwd_and_envs(sock_dir):
    script = "import os; print(os.getcwd()); print(os.environ['SSHREV_TEST_VALUE'])"
    exec_ = python_exec(script, envs={"SSHREV_TEST_VALUE": "marker"}, cwd=str(sock_dir))
    async with connected_agent(sock_dir) as (reader, writer):
        await send_request(reader, writer, ExecRequest(exec_))
        stdout, _stderr, code = await collect_output(reader, writer)
    cwd_line, env_line = stdout.decode().splitlines()
    assert os.path.realpath(cwd_line) == os.path.realpath(sock_dir)
    assert env_line == "marker"
    assert code == 0


@pytest.mark.asyncio
async def test_start_binds_socket_and_close_releases_it(sock_dir):
    path = sock_dir / "agent.sock"
    agent = RevAgent(str(path))
    await agent.start()
    assert stat.S_ISSOCK(os.stat(path).st_mode)
    await agent.close()
    with pytest.raises(OSError):
        await asyncio.open_unix_connection(str(path))


@pytest.mark.asyncio
async def test_run_serves_clients(sock_dir):
    path = sock_dir / "agent.sock"
    agent = RevAgent(path, None)
    task = asyncio.ensure_future(agent.run())
    for _ in range(500):
        if path.exists():
            break
        await asyncio.sleep(0.01)
    reader, writer = await asyncio.open_unix_connection(str(path))
    try:
        reply = await roundtrip(reader, writer, Message(11))
    finally:
        writer.close()
        await agent.close()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    assert reply == Message.failure()