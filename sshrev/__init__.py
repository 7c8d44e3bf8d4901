"""Run commands on the SSH client side through a forwarded ssh-agent socket.

Modules: ssh_agent (wire format), rpc (extension requests and events),
rev_agent (the agent server), rev_exec (the client) and cli (the command).
"""

__version__ = "0.1.0"