[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chatsock"
version = "0.1.0"
description = "Multi-client TCP chat server and terminal client with broadcast and join/leave notifications"
requires-python = ">=3.10"
keywords = ["chat", "tcp", "socket", "server", "client", "terminal"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: End Users/Desktop",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
chatsock-server = "chatsock.server:main"
chatsock-client = "chatsock.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["chatsock"]

[tool.pytest.ini_options]
addopts = "-ra"
