[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kpminer"
version = "1.2.4"
description = "Command-line front end, pool client and JSON-RPC/HTTP monitoring API for a ProgPoW miner"
requires-python = ">=3.10"
dependencies = []
keywords = ["mining", "progpow", "kawpow", "stratum", "json-rpc", "monitoring"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
kpminer = "kpminer.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["kpminer"]

[tool.pytest.ini_options]
addopts = "-ra"
