[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "melange"
version = "0.1.0"
description = "APK package helpers: filesystem linters, dependency analysis, ELF reading, SPDX SBOM generation and tar filtering"
requires-python = ">=3.10"
keywords = ["apk", "packaging", "sbom", "spdx", "linter", "elf", "pkg-config"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Archiving :: Packaging",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["melange"]

[tool.pytest.ini_options]
addopts = "-ra"
