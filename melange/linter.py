"""Checks that flag questionable content in built packages and APK archives."""

from __future__ import annotations

import fnmatch
import io
import json
import logging
import os
import posixpath
import re
import stat
import tarfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Mapping, Protocol, Sequence, Union

from melange.elf import ElfError, ElfFile
from melange.linter_defaults import LinterClass

_log = logging.getLogger(__name__)

_DEV_RE = re.compile(r"^dev/")
_OPT_RE = re.compile(r"^opt/")
_SRV_RE = re.compile(r"^srv/")
_TEMP_DIR_RE = re.compile(r"^(var/)?(tmp|run)/")
_USR_LOCAL_RE = re.compile(r"^usr/local/")
_VAR_EMPTY_RE = re.compile(r"^var/empty/")
_COMPAT_RE = re.compile(r"-compat$")
_OBJECT_FILE_RE = re.compile(r"\.(a|so|dylib)(\..*)?")
_SBOM_PATH_RE = re.compile(r"^var/lib/db/sbom/")

_BUILD_AND_APK = LinterClass.BUILD | LinterClass.APK


class LinterError(Exception):
    """Raised when a linter finds a problem or linting cannot proceed."""


def _no_data() -> bytes:
    return b""


@dataclass(frozen=True)
class _Entry:
    """One node of a package tree, with a lstat-style mode."""

    path: str
    mode: int
    reader: Callable[[], bytes] = field(default=_no_data, repr=False, compare=False)

    @property
    def is_dir(self) -> bool:
        return stat.S_ISDIR(self.mode)

    @property
    def is_regular(self) -> bool:
        return stat.S_ISREG(self.mode)

    def read(self) -> bytes:
        return self.reader()


class _Tree(Protocol):
    def walk(self) -> Iterator[_Entry]: ...

    def children(self, path: str) -> list[str]: ...


class _DirectoryTree:
    """A package tree backed by a directory on disk."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self._root = Path(root)

    def _full(self, rel: str) -> Path:
        return self._root if rel == "." else self._root / rel

    def walk(self) -> Iterator[_Entry]:
        yield from self._visit(".")

    def _visit(self, rel: str) -> Iterator[_Entry]:
        path = self._full(rel)
        try:
            info = path.lstat()
        except OSError as exc:
            raise LinterError(f"Error traversing tree at {rel}: {exc}") from exc
        yield _Entry(rel, info.st_mode, path.read_bytes)
        if stat.S_ISDIR(info.st_mode):
            try:
                names = sorted(os.listdir(path))
            except OSError as exc:
                raise LinterError(f"Error traversing tree at {rel}: {exc}") from exc
            for name in names:
                yield from self._visit(name if rel == "." else f"{rel}/{name}")

    def children(self, path: str) -> list[str]:
        try:
            return sorted(os.listdir(self._full(path)))
        except OSError:
            return []


class _ArchiveTree:
    """A package tree held in memory, as read from an archive."""

    def __init__(self, entries: Mapping[str, _Entry]) -> None:
        self._entries = dict(entries)
        self._children: dict[str, set[str]] = {".": set()}
        if "." not in self._entries:
            self._entries["."] = _Entry(".", stat.S_IFDIR | 0o755)
        for path in list(self._entries):
            self._link_parents(path)

    def _link_parents(self, path: str) -> None:
        while path != ".":
            parent = posixpath.dirname(path) or "."
            self._children.setdefault(parent, set()).add(posixpath.basename(path))
            if parent not in self._entries:
                self._entries[parent] = _Entry(parent, stat.S_IFDIR | 0o755)
            path = parent

    def walk(self) -> Iterator[_Entry]:
        yield from self._visit(".")

    def _visit(self, path: str) -> Iterator[_Entry]:
        entry = self._entries[path]
        yield entry
        if entry.is_dir:
            for name in sorted(self._children.get(path, ())):
                yield from self._visit(name if path == "." else f"{path}/{name}")

    def children(self, path: str) -> list[str]:
        entry = self._entries.get(path)
        if entry is None or not entry.is_dir:
            return []
        return sorted(self._children.get(path, ()))


def _go_ext(path: str) -> str:
    """Return the suffix from the last dot of the final path element, dot included."""
    base = path.rsplit("/", 1)[-1]
    index = base.rfind(".")
    return base[index:] if index >= 0 else ""


def _is_ignored_path(path: str) -> bool:
    return _SBOM_PATH_RE.match(path) is not None


@dataclass
class LinterContext:
    """A package name together with the tree of files that makes up the package.

    ``fsys`` may be a directory path or an already loaded package tree.
    """

    package_name: str
    fsys: Union[str, "os.PathLike[str]", _Tree]

    def __post_init__(self) -> None:
        if isinstance(self.fsys, (str, os.PathLike)):
            self.fsys = _DirectoryTree(self.fsys)

    @property
    def tree(self) -> _Tree:
        return self.fsys  # type: ignore[return-value]

    def lint_package_fs(
        self,
        warn: Callable[[Exception], None],
        linters: Sequence[str],
        linter_class: LinterClass,
    ) -> None:
        """Run ``linters`` of ``linter_class`` over the package.

        Findings go to ``warn``; unknown linter names raise LinterError.
        Packages whose name ends in -compat are not checked.
        """
        if _COMPAT_RE.search(self.package_name):
            return

        bad = check_valid_linters(linters)
        if bad:
            raise LinterError(f"Unknown linter(s): {', '.join(bad)}")

        walk_linters = [
            (name, _LINTERS[name])
            for name in linters
            if name in _LINTERS and _LINTERS[name].linter_class & linter_class
        ]
        post_linters = [
            (name, _POST_LINTERS[name])
            for name in linters
            if name not in _LINTERS and _POST_LINTERS[name].linter_class & linter_class
        ]

        for entry in self.tree.walk():
            for name, linter in walk_linters:
                try:
                    linter.func(self, entry)
                except (LinterError, OSError) as exc:
                    if linter.fail_on_error:
                        raise LinterError(
                            f'Linter {name} failed at path "{entry.path}": {exc}; '
                            f"suggest: {linter.explain}"
                        ) from exc
                    warn(exc)

        for name, post in post_linters:
            try:
                post.func(self)
            except (LinterError, OSError) as exc:
                if post.fail_on_error:
                    raise LinterError(
                        f"Linter {name} failed; suggest: {post.explain}"
                    ) from exc
                warn(exc)


def _prefix_linter(pattern: re.Pattern[str], message: str) -> Callable[[LinterContext, _Entry], None]:
    def check(_ctx: LinterContext, entry: _Entry) -> None:
        if pattern.match(entry.path):
            raise LinterError(message)

    return check


def _setuid_gid_linter(_ctx: LinterContext, entry: _Entry) -> None:
    if _is_ignored_path(entry.path):
        return
    if entry.mode & stat.S_ISUID:
        raise LinterError("File is setuid")
    if entry.mode & stat.S_ISGID:
        raise LinterError("File is setgid")


def _world_writeable_linter(_ctx: LinterContext, entry: _Entry) -> None:
    if _is_ignored_path(entry.path) or not entry.is_regular:
        return
    if entry.mode & 0o002:
        if entry.mode & 0o111:
            raise LinterError(
                "World-writeable executable file found in package (security risk)"
            )
        raise LinterError("World-writeable file found in package")


def _stripped_linter(_ctx: LinterContext, entry: _Entry) -> None:
    if _is_ignored_path(entry.path) or not entry.is_regular:
        return
    if entry.mode & 0o111 == 0 and not _OBJECT_FILE_RE.search(_go_ext(entry.path)):
        return

    try:
        data = entry.read()
    except OSError as exc:
        raise LinterError(f"Could not open file for reading: {exc}") from exc

    try:
        elf = ElfFile(data)
    except ElfError as exc:
        # Most likely not an ELF object at all.
        _log.warning("Could not open file %r as executable: %s", entry.path, exc)
        return

    if elf.has_section(".debug") or elf.has_section(".zdebug"):
        raise LinterError("File is not stripped")


def _empty_post_linter(ctx: LinterContext) -> None:
    for entry in ctx.tree.walk():
        if _is_ignored_path(entry.path) or entry.is_dir:
            continue
        return
    raise LinterError("Package is empty but no-provides is not set")


def _python_site_packages(tree: _Tree) -> list[str]:
    python_dirs = [
        f"usr/lib/{name}"
        for name in tree.children("usr/lib")
        if fnmatch.fnmatchcase(name, "python3.*")
    ]
    if not python_dirs:
        return []
    if len(python_dirs) > 1:
        raise LinterError(f"More than one Python version detected: {len(python_dirs)} found")
    site = f"{python_dirs[0]}/site-packages"
    return [f"{site}/{name}" for name in tree.children(site)]


def _python_docs_post_linter(ctx: LinterContext) -> None:
    for match in _python_site_packages(ctx.tree):
        if posixpath.basename(match) in ("doc", "docs"):
            raise LinterError("Docs directory encountered in Python site-packages directory")


def _python_multiple_post_linter(ctx: LinterContext) -> None:
    names: set[str] = set()
    for match in _python_site_packages(ctx.tree):
        base = posixpath.basename(match)
        if base.startswith("_"):
            continue
        if base in ("test", "tests", "doc", "docs"):
            continue
        ext = _go_ext(base)
        if ext in (".egg-info", ".dist-info", ".pth"):
            continue
        if ext:
            # Keeps as many leading characters as the extension is long.
            base = base[: len(ext)]
            if not base:
                continue
        names.add(base)

    if len(names) > 1:
        listed = ", ".join(json.dumps(name) for name in sorted(names))
        raise LinterError(f"Multiple Python packages detected: {len(names)} found ({listed})")


def _python_test_post_linter(ctx: LinterContext) -> None:
    for match in _python_site_packages(ctx.tree):
        if posixpath.basename(match) in ("test", "tests"):
            raise LinterError("Tests directory encountered in Python site-packages directory")


@dataclass(frozen=True)
class _Linter:
    func: Callable[[LinterContext, _Entry], None]
    linter_class: LinterClass
    fail_on_error: bool
    explain: str


@dataclass(frozen=True)
class _PostLinter:
    func: Callable[[LinterContext], None]
    linter_class: LinterClass
    fail_on_error: bool
    explain: str


_COMPAT_HINT = "This package should be a -compat package"

_LINTERS: dict[str, _Linter] = {
    "dev": _Linter(
        _prefix_linter(_DEV_RE, "Package writes to /dev"),
        _BUILD_AND_APK,
        False,
        "If this package is creating /dev nodes, it should use udev instead; "
        "otherwise, remove any files in /dev",
    ),
    "opt": _Linter(
        _prefix_linter(_OPT_RE, "Package writes to /opt"), _BUILD_AND_APK, False, _COMPAT_HINT
    ),
    "sbom": _Linter(
        _prefix_linter(_SBOM_PATH_RE, "Package writes to /var/lib/db/sbom"),
        LinterClass.BUILD,
        False,
        "Remove any files in /var/lib/db/sbom from the package",
    ),
    "setuidgid": _Linter(
        _setuid_gid_linter,
        _BUILD_AND_APK,
        False,
        "Unset the setuid/setgid bit on the relevant files, or remove this linter",
    ),
    "srv": _Linter(
        _prefix_linter(_SRV_RE, "Package writes to /srv"), _BUILD_AND_APK, False, _COMPAT_HINT
    ),
    "tempdir": _Linter(
        _prefix_linter(_TEMP_DIR_RE, "Package writes to a temp dir"),
        _BUILD_AND_APK,
        False,
        "Remove any offending files in temporary dirs in the pipeline",
    ),
    "usrlocal": _Linter(
        _prefix_linter(_USR_LOCAL_RE, "/usr/local path found in non-compat package"),
        _BUILD_AND_APK,
        False,
        _COMPAT_HINT,
    ),
    "varempty": _Linter(
        _prefix_linter(_VAR_EMPTY_RE, "Package writes to /var/empty"),
        _BUILD_AND_APK,
        False,
        "Remove any offending files in /var/empty in the pipeline",
    ),
    "worldwrite": _Linter(
        _world_writeable_linter,
        _BUILD_AND_APK,
        False,
        "Change the permissions of any world-writeable files in the package, "
        "disable the linter, or make this a -compat package",
    ),
    "strip": _Linter(
        _stripped_linter,
        _BUILD_AND_APK,
        False,
        "Properly strip all binaries in the pipeline",
    ),
}

_POST_LINTERS: dict[str, _PostLinter] = {
    "empty": _PostLinter(
        _empty_post_linter,
        _BUILD_AND_APK,
        False,
        "Verify that this package is supposed to be empty; if it is, disable this "
        "linter; otherwise check the build",
    ),
    "python/docs": _PostLinter(
        _python_docs_post_linter,
        _BUILD_AND_APK,
        False,
        "Remove all docs directories from the package",
    ),
    "python/multiple": _PostLinter(
        _python_multiple_post_linter,
        _BUILD_AND_APK,
        False,
        "Split this package up into multiple packages and verify you are not "
        "improperly using pip install",
    ),
    "python/test": _PostLinter(
        _python_test_post_linter,
        _BUILD_AND_APK,
        False,
        "Remove all test directories from the package",
    ),
}


def check_valid_linters(check: Sequence[str]) -> list[str]:
    """Return the names in ``check`` that are not known linters, in order."""
    return [name for name in check if name not in _LINTERS and name not in _POST_LINTERS]


def lint_build(
    package_name: str,
    path: str | os.PathLike[str],
    warn: Callable[[Exception], None],
    linters: Sequence[str],
) -> None:
    """Lint the build directory at ``path``."""
    LinterContext(package_name, path).lint_package_fs(warn, linters, LinterClass.BUILD)


def _gzip_members(data: bytes) -> Iterator[bytes]:
    while data:
        stream = zlib.decompressobj(wbits=31)
        out = stream.decompress(data)
        if not stream.eof:
            raise EOFError("truncated gzip stream")
        yield out
        data = stream.unused_data


def _normalize_name(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    name = name.strip("/")
    if not name:
        return "."
    return posixpath.normpath(name)


_TAR_KINDS = (
    (tarfile.TarInfo.isdir, stat.S_IFDIR),
    (tarfile.TarInfo.issym, stat.S_IFLNK),
    (tarfile.TarInfo.ischr, stat.S_IFCHR),
    (tarfile.TarInfo.isblk, stat.S_IFBLK),
    (tarfile.TarInfo.isfifo, stat.S_IFIFO),
)


def _read_tar_entries(segment: bytes) -> dict[str, _Entry]:
    entries: dict[str, _Entry] = {}
    if not segment:
        return entries
    with tarfile.open(fileobj=io.BytesIO(segment), mode="r:") as archive:
        for member in archive:
            name = _normalize_name(member.name)
            kind = next((k for test, k in _TAR_KINDS if test(member)), stat.S_IFREG)
            data = b""
            if kind == stat.S_IFREG:
                try:
                    handle = archive.extractfile(member)
                except KeyError:
                    handle = None
                if handle is not None:
                    data = handle.read()
            entries[name] = _Entry(name, kind | (member.mode & 0o7777), lambda d=data: d)
    return entries


def _pkginfo_value(text: str, key: str) -> str:
    value = ""
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith(("#", ";")):
            continue
        name, sep, rest = line.partition("=")
        if sep and name.strip() == key:
            value = rest.strip()
    return value


def lint_apk(
    path: str | os.PathLike[str],
    warn: Callable[[Exception], None],
    linters: Sequence[str],
) -> None:
    """Lint the APK archive at ``path``."""
    try:
        segments = [_read_tar_entries(s) for s in _gzip_members(Path(path).read_bytes())]
    except (OSError, EOFError, zlib.error, tarfile.TarError) as exc:
        raise LinterError(f"Could not open APKFS: {exc}") from exc

    control_index = next(
        (index for index, entries in enumerate(segments) if ".PKGINFO" in entries), None
    )
    if control_index is None:
        raise LinterError("Could not open .PKGINFO file: not found")

    text = segments[control_index][".PKGINFO"].read().decode("utf-8", "replace")
    package_name = _pkginfo_value(text, "pkgname")
    if not package_name:
        raise LinterError("pkgname is nonexistent")

    data = segments[control_index + 1] if control_index + 1 < len(segments) else {}
    ctx = LinterContext(package_name, _ArchiveTree(data))
    ctx.lint_package_fs(warn, linters, LinterClass.APK)