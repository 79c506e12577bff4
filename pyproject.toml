[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ssrserver"
version = "0.1.0"
description = "Building blocks of a ShadowsocksR-style relay: an asyncio UDP relay, UDP address headers and verify_simple framing"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "shadowsocksr",
    "proxy",
    "udp-relay",
    "socks5",
    "asyncio",
]
classifiers = [
    "Development Status :: 3 - Alpha",
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
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["ssrserver"]

[tool.hatch.build.targets.sdist]
include = [
    "ssrserver",
    "tests",
    "README.md",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
