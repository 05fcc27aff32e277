[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nezha"
version = "0.1.0"
description = "Server-side core of a monitoring dashboard: registries, service monitoring, notifications, task dispatch, agent reports and stream relaying."
requires-python = ">=3.10"
dependencies = []
keywords = ["monitoring", "dashboard", "uptime", "notifications", "agents", "services"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nezha"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
