import gzip
import io
import os
import stat
import struct
import tarfile

import pytest

from melange.linter import (
    LinterContext,
    LinterError,
    check_valid_linters,
    lint_apk,
    lint_build,
)
from melange.linter_defaults import LinterClass, get_default_linters


def run(name, root, linters):
    warnings = []
    lint_build(name, root, warnings.append, linters)
    return [str(w) for w in warnings]


def touch(root, *parts, mode=0o644, data=b""):
    path = root.joinpath(*parts)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    os.chmod(path, mode)
    return path


def make_elf(section_name):
    names = b"\0.shstrtab\0" + section_name.encode() + b"\0"
    shoff = 64 + len(names)
    ident = b"\x7fELF" + bytes([2, 1, 1]) + bytes(9)
    header = ident + struct.pack(
        "<HHIQQQIHHHHHH", 2, 62, 1, 0, 0, shoff, 0, 64, 56, 0, 64, 3, 1
    )
    null = bytes(64)
    shstr = struct.pack("<IIQQQQIIQQ", 1, 3, 0, 0, 64, len(names), 0, 0, 1, 0)
    extra = struct.pack("<IIQQQQIIQQ", 11, 1, 0, 0, 64, 0, 0, 0, 1, 0)
    return header + names + null + shstr + extra


def test_empty_linter(tmp_path):
    assert run("testempty", tmp_path, ["empty"]) == [
        "Package is empty but no-provides is not set"
    ]


def test_empty_linter_with_file(tmp_path):
    touch(tmp_path, "usr", "share", "file.txt")
    assert run("testempty", tmp_path, ["empty"]) == []


@pytest.mark.parametrize(
    "linter, parts, message",
    [
        ("usrlocal", ("usr", "local"), "/usr/local path found in non-compat package"),
        ("varempty", ("var", "empty"), "Package writes to /var/empty"),
        ("dev", ("dev",), "Package writes to /dev"),
        ("opt", ("opt",), "Package writes to /opt"),
        ("srv", ("srv",), "Package writes to /srv"),
        ("tempdir", ("tmp",), "Package writes to a temp dir"),
        ("tempdir", ("run",), "Package writes to a temp dir"),
        ("tempdir", ("var", "tmp"), "Package writes to a temp dir"),
        ("tempdir", ("var", "run"), "Package writes to a temp dir"),
        ("sbom", ("var", "lib", "db", "sbom"), "Package writes to /var/lib/db/sbom"),
    ],
)
def test_path_linters(tmp_path, linter, parts, message):
    touch(tmp_path, *parts, "test.txt")
    assert run("testpath", tmp_path, [linter]) == [message]


@pytest.mark.parametrize("linter", ["usrlocal", "varempty", "dev", "opt", "srv", "tempdir"])
def test_path_linters_ignore_other_paths(tmp_path, linter):
    touch(tmp_path, "usr", "lib", "test.txt")
    assert run("testpath", tmp_path, [linter]) == []


def test_compat_package_is_not_linted(tmp_path):
    touch(tmp_path, "usr", "local", "test.txt")
    assert run("foo-compat", tmp_path, ["usrlocal", "empty"]) == []


def test_python_docs_linter(tmp_path):
    site = tmp_path / "usr" / "lib" / "python3.14" / "site-packages"
    (site / "foo").mkdir(parents=True)
    assert run("testpythondocs", tmp_path, ["python/docs"]) == []

    (site / "docs").mkdir()
    assert run("testpythondocs", tmp_path, ["python/docs"]) == [
        "Docs directory encountered in Python site-packages directory"
    ]


def test_python_multiple_packages_linter(tmp_path):
    site = tmp_path / "usr" / "lib" / "python3.14" / "site-packages"
    (site / "foo").mkdir(parents=True)
    linters = ["python/multiple"]
    assert run("testpythonmultiple", tmp_path, linters) == []

    (site / "fooegg-0.1-py3.14.egg-info").touch()
    assert run("testpythonmultiple", tmp_path, linters) == []

    (site / "foodist-0.1-py3.14.dist-info").touch()
    assert run("testpythonmultiple", tmp_path, linters) == []

    (site / "foopth-0.1-py3.14.pth").touch()
    assert run("testpythonmultiple", tmp_path, linters) == []

    (site / "foo.so").touch()
    assert run("testpythonmultiple", tmp_path, linters) == []

    (site / "__pycache__").mkdir()
    assert run("testpythonmultiple", tmp_path, linters) == []

    (site / "bar").mkdir()
    assert run("testpythonmultiple", tmp_path, linters) == [
        'Multiple Python packages detected: 2 found ("bar", "foo")'
    ]


def test_python_multiple_versions(tmp_path):
    (tmp_path / "usr" / "lib" / "python3.11" / "site-packages").mkdir(parents=True)
    (tmp_path / "usr" / "lib" / "python3.12" / "site-packages").mkdir(parents=True)
    assert run("twopythons", tmp_path, ["python/test"]) == [
        "More than one Python version detected: 2 found"
    ]


def test_python_test_linter(tmp_path):
    site = tmp_path / "usr" / "lib" / "python3.14" / "site-packages"
    (site / "foo").mkdir(parents=True)
    assert run("testpythontest", tmp_path, ["python/test"]) == []

    (site / "test").mkdir()
    assert run("testpythontest", tmp_path, ["python/test"]) == [
        "Tests directory encountered in Python site-packages directory"
    ]


def test_setuid_linter(tmp_path):
    touch(tmp_path, "usr", "local", "test.txt", mode=0o770 | stat.S_ISUID | stat.S_ISGID)
    assert run("testsetuidgid", tmp_path, ["setuidgid"]) == ["File is setuid"]


def test_ignored_sbom_path_not_world_write_checked(tmp_path):
    touch(tmp_path, "var", "lib", "db", "sbom", "x.json", mode=0o666)
    assert run("ignored", tmp_path, ["worldwrite"]) == []


def test_disable_default_linter(tmp_path):
    touch(tmp_path, "usr", "local", "test.txt", mode=0o644)
    linters = [n for n in get_default_linters(LinterClass.BUILD) if n != "usrlocal"]
    assert run("testdisable", tmp_path, linters) == []


def test_strip_linter_flags_debug_section(tmp_path):
    touch(tmp_path, "usr", "bin", "prog", mode=0o755, data=make_elf(".debug"))
    assert run("teststrip", tmp_path, ["strip"]) == ["File is not stripped"]


def test_strip_linter_accepts_stripped_binary(tmp_path):
    touch(tmp_path, "usr", "bin", "prog", mode=0o755, data=make_elf(".text"))
    assert run("teststrip", tmp_path, ["strip"]) == []


def test_strip_linter_checks_non_executable_library(tmp_path):
    touch(tmp_path, "usr", "lib", "libfoo.so", mode=0o644, data=make_elf(".zdebug"))
    assert run("teststrip", tmp_path, ["strip"]) == ["File is not stripped"]


def test_strip_linter_ignores_scripts(tmp_path):
    touch(tmp_path, "usr", "bin", "script", mode=0o755, data=b"#!/bin/sh\necho hi\n")
    assert run("teststrip", tmp_path, ["strip"]) == []


def test_unknown_linter_raises(tmp_path):
    with pytest.raises(LinterError, match="Unknown linter\\(s\\): bogus, nope"):
        run("pkg", tmp_path, ["dev", "bogus", "nope"])


def test_check_valid_linters():
    assert check_valid_linters(["dev", "bogus", "empty", "python/docs"]) == ["bogus"]
    assert check_valid_linters(get_default_linters(LinterClass.BUILD)) == []


def test_linter_class_filters_linters(tmp_path):
    touch(tmp_path, "var", "lib", "db", "sbom", "x.json")
    warnings = []
    ctx = LinterContext("pkg", tmp_path)
    ctx.lint_package_fs(warnings.append, ["sbom"], LinterClass.APK)
    assert warnings == []
    ctx.lint_package_fs(warnings.append, ["sbom"], LinterClass.BUILD)
    assert [str(w) for w in warnings] == ["Package writes to /var/lib/db/sbom"]


def tar_bytes(files):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, (data, mode) in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def make_apk(path, pkginfo, files):
    control = gzip.compress(tar_bytes({".PKGINFO": (pkginfo.encode(), 0o644)}))
    data = gzip.compress(tar_bytes(files))
    path.write_bytes(control + data)
    return path


def apk_warnings(path):
    warnings = []
    lint_apk(path, warnings.append, get_default_linters(LinterClass.APK))
    return [str(w) for w in warnings]


def test_lint_apk_clean(tmp_path):
    apk = make_apk(
        tmp_path / "hello.apk",
        "pkgname = hello\npkgver = 2.12.1-r1\n",
        {"usr/bin/hello": (b"#!/bin/sh\necho hello\n", 0o755)},
    )
    assert apk_warnings(apk) == []


def test_lint_apk_usr_local(tmp_path):
    apk = make_apk(
        tmp_path / "bad.apk",
        "pkgname = bad\npkgver = 1.0-r0\n",
        {"usr/local/bin/tool": (b"#!/bin/sh\n", 0o755)},
    )
    assert "/usr/local path found in non-compat package" in apk_warnings(apk)


def test_lint_apk_setuid_from_archive_mode(tmp_path):
    apk = make_apk(
        tmp_path / "suid.apk",
        "pkgname = suid\n",
        {"usr/bin/tool": (b"#!/bin/sh\n", 0o4755)},
    )
    assert apk_warnings(apk) == ["File is setuid"]


def test_lint_apk_compat_package(tmp_path):
    apk = make_apk(
        tmp_path / "compat.apk",
        "pkgname = bad-compat\n",
        {"usr/local/bin/tool": (b"#!/bin/sh\n", 0o755)},
    )
    assert apk_warnings(apk) == []


def test_lint_apk_missing_pkgname(tmp_path):
    apk = make_apk(tmp_path / "noname.apk", "pkgver = 1.0-r0\n", {"a": (b"x", 0o644)})
    with pytest.raises(LinterError, match="pkgname is nonexistent"):
        apk_warnings(apk)


def test_lint_apk_not_an_archive(tmp_path):
    path = tmp_path / "junk.apk"
    path.write_bytes(b"definitely not gzip")
    with pytest.raises(LinterError, match="Could not open APKFS"):
        apk_warnings(path)