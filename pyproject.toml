[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tunnelrules"
version = "10.4.3"
description = "Tunnel restriction rules: YAML-configured allow lists for tunnel servers, with live reload"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
    "watchdog",
]
keywords = ["tunnel", "websocket", "restrictions", "allowlist", "proxy", "yaml", "so_mark"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
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
]

[tool.hatch.build.targets.wheel]
packages = ["tunnelrules"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
