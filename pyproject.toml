[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "netbeacon"
version = "0.1.0"
description = "Network beacon building blocks: SSRF-safe dialing, latency probes, a store-and-forward buffer, metrics, log redaction and WARP MDM file helpers."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "network",
    "monitoring",
    "beacon",
    "ssrf",
    "store-and-forward",
    "prometheus",
    "latency",
    "logging",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
    "Topic :: System :: Logging",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["netbeacon"]

[tool.hatch.build.targets.sdist]
include = ["netbeacon", "tests", "README.md"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
target-version = "py310"
line-length = 100

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
