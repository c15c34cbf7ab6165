[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rdpsweep"
version = "0.1.0"
description = "Building blocks for sweeping address ranges for RDP services: index shuffling, IPv4 range lists and RDP standard-security cryptography"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = ["rdp", "scanner", "ipv4", "ranges", "rc4", "format-preserving", "shuffle"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Information Technology",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
    "hypothesis",
]

[tool.hatch.build.targets.wheel]
packages = ["rdpsweep"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
