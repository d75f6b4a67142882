[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sentinel_proxy"
version = "0.1.0"
description = "Usage tracking for an AI proxy: per-request recording and batched, rate-limited, circuit-broken reporting"
requires-python = ">=3.10"
dependencies = []
keywords = ["ai", "proxy", "usage", "tokens", "batching", "rate-limiting", "circuit-breaker"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["sentinel_proxy"]

[tool.pytest.ini_options]
addopts = "-ra"
