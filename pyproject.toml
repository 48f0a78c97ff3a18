[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ubusbroker"
version = "0.1.0"
description = "A micro bus message broker: objects, method calls, events, subscriptions and ACLs over a Unix socket"
requires-python = ">=3.10"
keywords = ["ipc", "message-bus", "broker", "unix-socket", "rpc", "acl"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
ubusbroker = "ubusbroker.server:main"

[tool.hatch.build.targets.wheel]
packages = ["ubusbroker"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
