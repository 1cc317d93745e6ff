[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "labkv"
version = "0.1.0"
description = "A simulated RPC network, a versioned key/value service, a distributed lock and a replicated state machine layer, all in-process"
requires-python = ">=3.10"
dependencies = []
keywords = ["key-value", "rpc", "distributed-systems", "linearizability", "replication", "lock"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["labkv"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
