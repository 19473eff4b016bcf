[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "birbnest"
version = "0.1.0"
description = "Instance-aware cache helpers: multi-tenant keys, instance registry, bulk instance operations, circuit breakers and lightweight telemetry"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "cache",
    "multi-tenant",
    "circuit-breaker",
    "registry",
    "telemetry",
    "metrics",
    "logging",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["birbnest"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
