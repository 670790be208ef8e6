"""Linter classes and the linters enabled by default for each."""

from __future__ import annotations

import enum


class LinterClass(enum.IntFlag):
    """The kind of target a linter applies to."""

    DEFAULT = 1
    BUILD = 2
    APK = 4


_DEFAULT_LINTERS = (
    "dev",
    "empty",
    "opt",
    "python/docs",
    "python/multiple",
    "python/test",
    "srv",
    "setuidgid",
    "strip",
    "tempdir",
    "usrlocal",
    "varempty",
    "worldwrite",
)

# Run by default on builds but not on APKs.
_DEFAULT_BUILD_LINTERS = ("sbom",)

# Run by default on APKs but not during builds.
_DEFAULT_APK_LINTERS: tuple[str, ...] = ()


def get_default_linters(linter_class: LinterClass) -> list[str]:
    """Return a fresh list of the default linters for ``linter_class``."""
    if linter_class == LinterClass.DEFAULT:
        extra: tuple[str, ...] = ()
    elif linter_class == LinterClass.BUILD:
        extra = _DEFAULT_BUILD_LINTERS
    elif linter_class == LinterClass.APK:
        extra = _DEFAULT_APK_LINTERS
    else:
        raise ValueError("Invalid linter set called")
    return [*_DEFAULT_LINTERS, *extra]