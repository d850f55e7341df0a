[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wproftools"
version = "0.1.0"
description = "Support library for a wall-clock profiler: CPU topology grouping, request-tracking binary discovery, protobuf wire encoding and stack trace deduplication"
requires-python = ">=3.10"
dependencies = []
keywords = ["profiling", "tracing", "stack-traces", "cpu-topology", "protobuf"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: Software Development :: Debuggers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["wproftools"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
