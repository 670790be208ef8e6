# melange

A library of helpers for building and checking APK-style packages. It needs
nothing beyond the Python standard library (Python 3.10 or later).

- `melange.linter`: walks a build directory or an `.apk` archive and reports
  common packaging mistakes.
- `melange.linter_defaults`: the `LinterClass` flags and the default linter
  sets for builds and APKs.
- `melange.sca`: scans a package directory and generates `cmd:`, `so:`,
  `pc:` and `python3~X.Y` dependency and provides entries.
- `melange.elf`: a small ELF reader for interpreters, needed libraries,
  SONAMEs and section names.
- `melange.sbom`: generates an SPDX 2.3 JSON SBOM inside a package tree.
- `melange.tarfilter`: a readable stream that keeps only the entries of a tar
  stream below a given prefix, optionally trimming that prefix.
- `melange.util`: `SOURCE_DATE_EPOCH` handling, downloading and hashing files,
  and small mapping and list helpers.

## Installation

```
pip install .
```

## Linting

```python
from melange.linter import lint_apk, lint_build
from melange.linter_defaults import LinterClass, get_default_linters

warnings = []
lint_build(
    "hello",
    "/path/to/build/root",
    warnings.append,
    get_default_linters(LinterClass.BUILD),
)
lint_apk("hello-1.0-r0.apk", warnings.append, get_default_linters(LinterClass.APK))
for warning in warnings:
    print(warning)
```

Linters run over every path (`dev`, `opt`, `sbom`, `setuidgid`, `srv`,
`strip`, `tempdir`, `usrlocal`, `varempty`, `worldwrite`) and then over the
tree as a whole (`empty`, `python/docs`, `python/multiple`, `python/test`).
Findings are passed to the `warn` callback as exceptions. Unknown linter names
raise `LinterError`; `check_valid_linters(names)` returns the unknown ones.
Packages whose name ends with `-compat` are not linted. The `sbom` linter
belongs to the build class only.

`lint_apk` reads the archive as a series of gzip-compressed tar segments,
takes `pkgname` from the `.PKGINFO` control file and lints the segment that
follows it. A missing `.PKGINFO` or empty `pkgname` raises `LinterError`.

## Dependency analysis

```python
from pathlib import Path
from melange.sca import Dependencies, DirectoryHandle, PackageOptions, analyze

handle = DirectoryHandle(
    package_name="hello",
    version="1.0-r0",
    path=Path("/path/to/build/root"),
    relatives={"hello-libs": Path("/path/to/hello-libs")},
    options=PackageOptions(no_commands=False),
)
found = Dependencies()
analyze(handle, found)
print(found.runtime, found.provides, found.vendored)
```

`analyze` runs `generate_shared_object_name_deps`, `generate_cmd_providers`,
`generate_pkg_config_deps` and `generate_python_deps` in that order.
Library symlinks are followed into the related packages' `lib`, `usr/lib`,
`lib64` and `usr/lib64` directories. `parse_pkgconfig_version(text)` returns
the expanded `Version` field of a pkg-config file.

## Generating an SBOM

```python
from melange.sbom import Generator, Options, Spec

spec = Spec(
    path="/path/to/build/root",
    package_name="hello",
    package_version="1.0-r0",
    license="Apache-2.0",
    namespace="wolfi",
    arch="x86_64",
)
path = Generator(Options(scan_files=True)).generate_sbom(spec)
```

The document is written to `var/lib/db/sbom/<name>-<version>.spdx.json`
under the package root and its path is returned; if the root does not exist,
nothing is written and `None` is returned. Every regular file is listed with
SHA1, SHA256 and SHA512 checksums, and a package URL is added when a
namespace is given. The creation time honours `SOURCE_DATE_EPOCH`.

## Filtering a tar stream

```python
import io
import tarfile
from melange.tarfilter import TarFilter

with open("rootfs.tar", "rb") as raw, TarFilter(raw, "/foo/bar", trim=True) as filtered:
    with tarfile.open(fileobj=io.BufferedReader(filtered), mode="r|") as archive:
        for member in archive:
            print(member.name)
```

The entry named exactly by the prefix is dropped; with `trim=True` the prefix
and one following `/` are removed from the names kept.

## Utilities

- `source_date_epoch(default_time, logger=None)` returns a UTC datetime from
  `SOURCE_DATE_EPOCH`, or `default_time` when it is unset or blank; a
  non-integer value raises `ValueError`.
- `download_file(uri)` downloads into a temporary file and returns its path,
  raising `OSError` on any status other than 200.
- `hash_file(path, digest)` returns the hex digest of a file.
- `right_join_map`, `reverse_slice` and `contains` are small collection helpers.

## What this package does not do

It has no command-line program and does not build packages: there is no build
pipeline, no configuration file parsing, no version bumping of configuration
files and no artifact cache. It provides the checks, analysis and SBOM steps
as library calls.

## Running the tests

```
pip install .[test]
pytest
```