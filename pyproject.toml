[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "certwatch"
version = "0.1.0"
description = "Building blocks for monitoring certificate transparency feeds and alerting on suspicious domains"
requires-python = ">=3.10"
keywords = ["certificate-transparency", "certstream", "phishing", "monitoring", "slack", "prometheus"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Information Technology",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Internet :: Log Analysis",
    "Topic :: Security",
]
dependencies = [
    "aiohttp",
    "httpx",
    "psutil",
    "pyyaml",
    "websockets",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "respx",
]

[tool.hatch.build.targets.wheel]
packages = ["certwatch"]

[tool.pytest.ini_options]
addopts = "-ra"
