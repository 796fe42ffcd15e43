[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hepserve"
version = "0.1.0"
description = "HEP capture pieces: UDP/TCP/TLS/WebSocket packet listeners, Prometheus-style VoIP quality metrics and PostgreSQL partition SQL templates"
requires-python = ">=3.10"
keywords = ["hep", "sip", "voip", "rtcp", "prometheus", "metrics", "capture"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Telephony",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["hepserve"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
