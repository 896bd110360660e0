[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "govverifier"
version = "0.1.0"
description = "HTTP service that indexes signed governance Merkle snapshots and serves vote and stake account proofs"
requires-python = ">=3.10"
keywords = ["merkle", "proof", "governance", "snapshot", "verifier", "http", "ed25519"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Database",
]
dependencies = [
    "aiohttp>=3.9",
    "pynacl>=1.5",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
govverifier = "govverifier.app:main"
govverifier-loadtest = "govverifier.loadtest:main"

[tool.hatch.build.targets.wheel]
packages = ["govverifier"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
