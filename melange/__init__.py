"""APK package helpers: linters, dependency analysis, ELF reading, SBOM generation and tar filtering."""

__version__ = "0.1.0"

__all__ = ["elf", "linter", "linter_defaults", "sbom", "sca", "tarfilter", "util"]