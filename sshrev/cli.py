"""Command line: run the agent, or run a command through one."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import stat
import sys
from pathlib import Path

from sshrev.rev_agent import RevAgent
from sshrev.rev_exec import RevExec
from sshrev.rpc import Exec

_LOG_ENV = "SSHREV_LOG"


def cleanup_sock(path) -> None:
    """Remove ``path`` if it is a socket; leave anything else alone."""
    try:
        info = os.stat(path)
    except FileNotFoundError:
        return
    if stat.S_ISSOCK(info.st_mode):
        os.remove(path)


def build_parser() -> argparse.ArgumentParser:
    auth_sock = os.environ.get("SSH_AUTH_SOCK")
    parser = argparse.ArgumentParser(prog="sshrev")
    commands = parser.add_subparsers(dest="command", required=True)

    agent = commands.add_parser("agent", help="serve an agent socket that runs commands")
    agent.add_argument(
        "-A", "--ssh-auth-sock", type=Path, default=None if auth_sock is None else Path(auth_sock),
        help="upstream agent socket [env: SSH_AUTH_SOCK]",
    )
    agent.add_argument("-R", "--ssh-rev-sock", type=Path, required=True, help="socket to listen on")

    exec_ = commands.add_parser("exec", help="run a command through an agent")
    exec_.add_argument(
        "-A", "--ssh-auth-sock", type=Path,
        default=None if auth_sock is None else Path(auth_sock),
        required=auth_sock is None,
        help="agent socket [env: SSH_AUTH_SOCK]",
    )
    exec_.add_argument("-e", "--env", action="append", default=[], help="environment entry (not forwarded)")
    exec_.add_argument("-C", "--cwd", default=None, help="working directory of the command")
    exec_.add_argument("cmd")
    exec_.add_argument("args", nargs=argparse.REMAINDER)
    return parser


class _BlockingReader:
    """Reads a blocking binary stream from a worker thread."""

    def __init__(self, source) -> None:
        self._read = getattr(source, "read1", source.read)

    async def read(self, n: int) -> bytes:
        return await asyncio.to_thread(self._read, n)


@contextlib.asynccontextmanager
async def _stdin_reader():
    stdin = sys.stdin
    source = getattr(stdin, "buffer", stdin)
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    transport = None
    fd = None
    try:
        fd = source.fileno()
        transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), source
        )
    except (OSError, ValueError):
        transport = None
    if transport is None:
        yield _BlockingReader(source)
        return
    try:
        yield reader
    finally:
        with contextlib.suppress(OSError):
            os.set_blocking(fd, True)
        transport.close()


async def _run_agent(args: argparse.Namespace) -> None:
    agent = RevAgent(args.ssh_rev_sock, args.ssh_auth_sock)
    try:
        await agent.run()
    finally:
        await agent.close()


async def _run_exec(args: argparse.Namespace) -> int:
    client = await RevExec.open(args.ssh_auth_sock)
    try:
        request = Exec(args.cmd, list(args.args), {}, args.cwd)
        stdout = getattr(sys.stdout, "buffer", sys.stdout)
        stderr = getattr(sys.stderr, "buffer", sys.stderr)
        async with _stdin_reader() as stdin:
            return await client.exec(request, stdin, stdout, stderr)
    finally:
        await client.close()


def _configure_logging() -> None:
    level = os.environ.get(_LOG_ENV, "WARNING").upper()
    if not isinstance(logging.getLevelName(level), int):
        level = "WARNING"
    logging.basicConfig(level=level)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "agent":
        _configure_logging()
        cleanup_sock(args.ssh_rev_sock)
        try:
            asyncio.run(_run_agent(args))
        except KeyboardInterrupt:
            return 130
        return 0
    return asyncio.run(_run_exec(args))


if __name__ == "__main__":
    sys.exit(main())