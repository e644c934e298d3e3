[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "studio-backend"
version = "0.1.0"
description = "Request handlers and building blocks for the Studio Activity plugin backend: telemetry proxy, release lookup and landing redirect."
requires-python = ">=3.10"
keywords = ["telemetry", "posthog", "asgi", "starlette", "backend"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Typing :: Typed",
]
dependencies = [
    "starlette>=0.37",
    "httpx>=0.27",
]

[project.optional-dependencies]
test = [
    "pytest>=8.0",
    "pytest-asyncio>=0.23",
    "respx>=0.21",
    "httpx>=0.27",
]

[tool.hatch.build.targets.wheel]
packages = ["studio_backend"]

[tool.hatch.build.targets.sdist]
include = ["studio_backend", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
packages = ["studio_backend"]
warn_unused_ignores = true
warn_redundant_casts = true
disallow_untyped_defs = true
