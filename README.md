# sshrev

`sshrev` lets a process on a remote host run a command back on the machine
you connected from. It uses the SSH agent connection that SSH already
forwards.

On your local machine, `sshrev agent` listens on a Unix socket that speaks
the ssh-agent protocol. It passes every ordinary agent request on to your
real agent. It handles one private extension itself, and that extension
starts a local process. On the remote host, `sshrev exec` connects to the
forwarded agent socket and asks the agent to run a command. It sends its own
stdin to the command and writes the command's stdout and stderr to its own.
It then exits with the command's exit code.

## Installation

```
pip install .
```

This installs the `sshrev` command.

## Usage

Start the reverse agent locally. It sits in front of your existing agent:

```
sshrev agent --ssh-rev-sock /tmp/sshrev.sock
```

`agent` options:

- `-R`, `--ssh-rev-sock` (required): the socket to listen on. If a socket
  file is already at that path, it is removed first. Any other kind of file
  there is left alone.
- `-A`, `--ssh-auth-sock`: the upstream agent. It defaults to
  `$SSH_AUTH_SOCK`. Each client connection opens its own connection to the
  upstream agent. Without an upstream agent, ordinary agent requests are
  answered with a failure.

The agent logs at the level named by the `SSHREV_LOG` environment variable
(for example `DEBUG`). The default is `WARNING`. It runs until interrupted
and then exits with status 130.

Connect with agent forwarding pointed at the reverse agent:

```
SSH_AUTH_SOCK=/tmp/sshrev.sock ssh -A remote-host
```

On the remote host, run a command on your local machine:

```
sshrev exec -- pbcopy < notes.txt
sshrev exec -C /tmp -- ls -la
```

`exec` options:

- `-A`, `--ssh-auth-sock`: the agent socket to use. It defaults to
  `$SSH_AUTH_SOCK` and is required when that variable is not set.
- `-C`, `--cwd`: the working directory for the local command.
- `-e`, `--env`: may be given more than once. It is accepted but not sent;
  the command runs with the agent's environment.

Everything after the command name is passed to it as its arguments.

## Library use

```python
import asyncio
from sshrev.rev_agent import RevAgent

asyncio.run(RevAgent("/tmp/sshrev.sock", None).run())
```

`RevAgent.start()` binds the socket, `run()` serves clients until it is
cancelled, and `close()` stops listening and ends every client connection.

On the other side, `sshrev.rev_exec.RevExec` connects to an agent socket with
`RevExec.open(path)`. You can use it as an async context manager. Its
`exec(request, stdin, stdout, stderr)` method takes an `sshrev.rpc.Exec`
(`cmd`, `args`, `envs`, `cwd`), an object with an awaitable `read(n)`, and
two binary streams. It returns the exit code. When you call `exec` from the
library, the `envs` you give are added to the agent's environment for the
command.

`sshrev.ssh_agent` holds the wire format: `Message`, `Extension`,
`decode_message`, `read_message`, `write_message` and `ProtocolError`.
`sshrev.rpc` holds the extension's requests (`ExecRequest`, `StdinRequest`,
`WatchRequest`, `parse_request`, `build_request_message`) and events
(`Cancelled`, `Stdout`, `Stderr`, `Exited`, `parse_event`).

## Limits

- Each client connection runs at most one command. A second exec request on
  the same connection is answered with an extension failure.
- The agent does not answer the agent protocol's extension query. Only its
  own extension type is handled, and every other extension request is
  answered with a failure.
- The `exec` command never sends environment variables.
- Unix sockets only; there is no Windows support.

## Security

Anyone who can reach the reverse agent socket can run any command as your
local user. Forward it only to hosts you trust.

## Tests

```
pip install .[test]
pytest
```