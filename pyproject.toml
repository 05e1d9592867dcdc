[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ndagent"
version = "0.1.0"
description = "Firewall agent components: relay stream tunnelling, COSE payload signing, durable state and input validation."
requires-python = ">=3.10"
keywords = [
    "agent",
    "firewall",
    "opnsense",
    "websocket",
    "tunnel",
    "multiplexing",
    "cose",
    "ed25519",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Security :: Cryptography",
]
dependencies = [
    "cryptography",
    "cbor2",
    "websocket-client",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["ndagent"]

[tool.hatch.build.targets.sdist]
include = [
    "ndagent",
    "tests",
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
