[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dmndproxy"
version = "0.2.4"
description = "Mining proxy building blocks: configuration loading, per-connection miner statistics and a monitoring HTTP API"
requires-python = ">=3.11"
keywords = ["mining", "proxy", "bitcoin", "hashrate", "monitoring", "statistics"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "aiohttp>=3.9",
    "psutil>=5.9",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["dmndproxy"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
