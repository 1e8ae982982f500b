[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "linkpoll"
version = "0.1.0"
description = "Zero-copy linked buffers and an epoll/kqueue poller for non-blocking sockets"
requires-python = ">=3.10"
dependencies = []
keywords = ["epoll", "kqueue", "poller", "buffer", "zero-copy", "networking", "event-loop"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Operating System :: POSIX :: BSD",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["linkpoll"]

[tool.pytest.ini_options]
addopts = "-ra"
