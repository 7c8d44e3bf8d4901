[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sshrev"
version = "0.1.0"
description = "Run commands on the SSH client side through a forwarded ssh-agent socket"
requires-python = ">=3.10"
dependencies = []
keywords = ["ssh", "ssh-agent", "agent-forwarding", "remote-exec", "unix-socket"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[project.scripts]
sshrev = "sshrev.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["sshrev"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
