[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wxchatlog"
version = "0.1.0"
description = "Decrypt the local SQLite databases of the WeChat desktop client, read client memory on macOS, and query chat data through a cached repository."
requires-python = ">=3.10"
keywords = ["wechat", "chat", "sqlite", "sqlcipher", "decryption", "chat-history", "vmmap"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: MacOS",
    "Operating System :: Microsoft :: Windows",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
    "Topic :: Database",
    "Topic :: Security :: Cryptography",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["wxchatlog"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
