"""Software composition analysis: derive dependencies and provides from package contents."""

from __future__ import annotations

import logging
import os
import posixpath
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Mapping, Protocol

from melange.elf import ElfError, ElfFile

_LIB_DIRS = ("lib", "usr/lib", "lib64", "usr/lib64")
_CMD_PREFIXES = ("bin", "sbin", "usr/bin", "usr/sbin")

_PKG_CONFIG_VERSION_RE = re.compile(r"-(alpha|beta|rc|pre)")
_PC_LINE_RE = re.compile(r"([A-Za-z0-9_.]+)\s*([:=])\s*(.*)")
_PC_VAR_RE = re.compile(r"\$\{([^}]*)\}")


@dataclass
class Dependencies:
    """Runtime dependencies, provides and vendored provides of a package."""

    runtime: list[str] = field(default_factory=list)
    provides: list[str] = field(default_factory=list)
    vendored: list[str] = field(default_factory=list)


@dataclass
class PackageOptions:
    """Switches that turn parts of the analysis off."""

    no_provides: bool = False
    no_depends: bool = False
    no_commands: bool = False


class _Handle(Protocol):
    package_name: str
    version: str
    options: PackageOptions
    base_dependencies: Dependencies
    logger: logging.Logger

    @property
    def relative_names(self) -> list[str]: ...

    def filesystem(self) -> Path: ...

    def filesystem_for_relative(self, package_name: str) -> Path: ...


@dataclass
class DirectoryHandle:
    """Analysis state for a package whose contents live in a directory.

    ``relatives`` maps the names of related packages to their directories;
    the package itself is always the first relative.
    """

    package_name: str
    version: str
    path: Path
    relatives: Mapping[str, Path] = field(default_factory=dict)
    options: PackageOptions = field(default_factory=PackageOptions)
    base_dependencies: Dependencies = field(default_factory=Dependencies)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))

    @property
    def relative_names(self) -> list[str]:
        return [self.package_name, *(n for n in self.relatives if n != self.package_name)]

    def filesystem(self) -> Path:
        """Return the directory holding this package's contents."""
        return Path(self.path)

    def filesystem_for_relative(self, package_name: str) -> Path:
        """Return the directory holding a related package's contents."""
        if package_name == self.package_name:
            return self.filesystem()
        try:
            return Path(self.relatives[package_name])
        except KeyError:
            raise LookupError(f"unknown related package {package_name!r}") from None


def _walk(root: Path) -> Iterator[tuple[str, Path, os.stat_result]]:
    """Yield (relative path, path, lstat) for root and everything below, in lexical order."""

    def visit(rel: str, path: Path) -> Iterator[tuple[str, Path, os.stat_result]]:
        info = path.lstat()
        yield rel, path, info
        if stat.S_ISDIR(info.st_mode):
            for name in sorted(os.listdir(path)):
                child = name if rel == "." else f"{rel}/{name}"
                yield from visit(child, path / name)

    yield from visit(".", root)


def _allowed_prefix(path: str, prefixes: tuple[str, ...]) -> bool:
    return path.startswith(prefixes)


def _is_executable_file(info: os.stat_result) -> bool:
    return stat.S_ISREG(info.st_mode) and info.st_mode & 0o555 == 0o555


def generate_cmd_providers(hdl: _Handle, generated: Dependencies) -> None:
    """Add cmd: provides for executables in the command directories."""
    if hdl.options.no_commands:
        return

    hdl.logger.info("scanning for commands...")
    for rel, _path, info in _walk(hdl.filesystem()):
        if _is_executable_file(info) and _allowed_prefix(rel, _CMD_PREFIXES):
            generated.provides.append(f"cmd:{posixpath.basename(rel)}={hdl.version}")


def _dereference_cross_package_symlink(hdl: _Handle, rel: str) -> tuple[str, str] | None:
    target = posixpath.basename(os.readlink(hdl.filesystem() / rel))
    for name in hdl.relative_names:
        base = hdl.filesystem_for_relative(name)
        for lib_dir in _LIB_DIRS:
            candidate = posixpath.join(lib_dir, target)
            if (base / candidate).exists():
                return name, candidate
    return None


def _load_elf(path: Path) -> ElfFile | None:
    try:
        return ElfFile(path.read_bytes())
    except (OSError, ElfError):
        return None


def _scan_library_symlink(hdl: _Handle, rel: str, generated: Dependencies) -> None:
    try:
        found = _dereference_cross_package_symlink(hdl, rel)
    except (OSError, LookupError):
        return
    if found is None:
        return

    package, real_path = found
    try:
        target_root = hdl.filesystem_for_relative(package)
    except LookupError:
        return
    elf = _load_elf(target_root / real_path)
    if elf is None:
        return

    try:
        sonames = elf.sonames()
    except ElfError:
        hdl.logger.warning("library %s lacks SONAME", rel)
        return
    generated.runtime.extend(f"so:{soname}" for soname in sonames)


def _scan_executable(hdl: _Handle, rel: str, path: Path, generated: Dependencies) -> None:
    basename = posixpath.basename(rel)
    # Anything that fails to parse is most likely a script, not an ELF object.
    elf = _load_elf(path)
    if elf is None:
        return

    options = hdl.options
    interp = elf.interpreter()
    if interp and not options.no_depends:
        hdl.logger.info("interpreter for %s => %s", basename, interp)
        # The musl interpreter links back to libc, so depend on the real name.
        name = f"so:{posixpath.basename(interp)}".replace("so:ld-musl", "so:libc.musl")
        generated.runtime.append(name)

    try:
        libs = elf.imported_libraries()
    except ElfError as exc:
        hdl.logger.warning("reading imported libraries of %s failed: %s", rel, exc)
        return

    if not options.no_depends:
        generated.runtime.extend(f"so:{lib}" for lib in libs if ".so." in lib)

    # Programs carry an interpreter and should not provide SONAMEs, except libc,
    # which sets PT_INTERP on itself.
    if options.no_provides or (interp and not basename.startswith("libc")):
        return

    try:
        sonames = elf.sonames()
    except ElfError:
        hdl.logger.warning("library %s lacks SONAME", rel)
        return

    for soname in sonames:
        parts = soname.split(".so.")
        libver = parts[1] if len(parts) > 1 else "0"
        entry = f"so:{soname}={libver}"
        if _allowed_prefix(rel, _LIB_DIRS):
            generated.provides.append(entry)
        else:
            generated.vendored.append(entry)


def generate_shared_object_name_deps(hdl: _Handle, generated: Dependencies) -> None:
    """Add so: dependencies and provides found in ELF objects and library symlinks."""
    hdl.logger.info("scanning for shared object dependencies...")
    for rel, path, info in _walk(hdl.filesystem()):
        if stat.S_ISLNK(info.st_mode):
            if ".so" in rel:
                _scan_library_symlink(hdl, rel, generated)
        elif _is_executable_file(info):
            _scan_executable(hdl, rel, path, generated)


def _expand_pc_variables(value: str, variables: Mapping[str, str], lineno: int) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            raise ValueError(f"line {lineno}: undefined variable {name!r}")
        return variables[name]

    return _PC_VAR_RE.sub(replace, value)


def parse_pkgconfig_version(text: str) -> str:
    """Return the expanded Version field of a pkg-config file, or '' if it has none.

    Raises ValueError on lines that are neither variables nor fields, and on
    references to undefined variables.
    """
    variables: dict[str, str] = {}
    version = ""
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        match = _PC_LINE_RE.fullmatch(line)
        if match is None:
            raise ValueError(f"line {lineno}: cannot parse {raw!r}")
        key, separator, value = match.groups()
        value = _expand_pc_variables(value.strip(), variables, lineno)
        if separator == "=":
            variables[key] = value
        elif key == "Version":
            version = value
    return version


def generate_pkg_config_deps(hdl: _Handle, generated: Dependencies) -> None:
    """Add pc: provides for the pkg-config files shipped by the package."""
    hdl.logger.info("scanning for pkg-config data...")
    for rel, path, info in _walk(hdl.filesystem()):
        if not rel.endswith(".pc"):
            continue
        # Some packages alias .pc files through symlinks; those are skipped.
        if stat.S_ISLNK(info.st_mode):
            continue
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        try:
            version = parse_pkgconfig_version(text)
        except ValueError as exc:
            hdl.logger.warning("Unable to load .pc file (%s) using pkgconfig: %s", rel, exc)
            continue

        name = posixpath.basename(rel).removesuffix(".pc")
        apk_version = _PKG_CONFIG_VERSION_RE.sub(r"_\1", version)
        if not hdl.options.no_provides:
            generated.provides.append(f"pc:{name}={apk_version}")


def generate_python_deps(hdl: _Handle, generated: Dependencies) -> None:
    """Add a python3~X.Y dependency for packages that ship Python modules."""
    hdl.logger.info("scanning for python modules...")
    module_version = ""
    for rel, _path, info in _walk(hdl.filesystem()):
        if posixpath.basename(rel) != "site-packages":
            continue
        parent = posixpath.basename(posixpath.dirname(rel))
        if not parent.startswith("python"):
            continue
        if not stat.S_ISDIR(info.st_mode):
            continue
        module_version = parent[len("python"):]

    if not module_version:
        return

    for dep in hdl.base_dependencies.runtime:
        if dep.startswith("python"):
            hdl.logger.warning(
                "%s: Python dependency %r already specified, consider removing it "
                "in favor of SCA-generated dependency",
                hdl.package_name,
                dep,
            )
            return

    generated.runtime.append(f"python3~{module_version}")


_GENERATORS: tuple[Callable[[_Handle, Dependencies], None], ...] = (
    generate_shared_object_name_deps,
    generate_cmd_providers,
    generate_pkg_config_deps,
    generate_python_deps,
)


def analyze(hdl: _Handle, generated: Dependencies) -> None:
    """Run every analyzer on ``hdl``, adding their findings to ``generated``."""
    for generator in _GENERATORS:
        generator(hdl, generated)