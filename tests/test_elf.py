import struct

import pytest

from melange.elf import ElfError, ElfFile


def build_elf(*, interp=None, needed=(), soname=None, extra_sections=(), dynamic=True, endian="<"):
    e = endian
    dynstr = bytearray(b"\0")

    def intern(text):
        offset = len(dynstr)
        dynstr.extend(text.encode() + b"\0")
        return offset

    entries = [(1, intern(name)) for name in needed]
    if soname is not None:
        entries.append((14, intern(soname)))
    entries.append((0, 0))

    sections = []
    if interp is not None:
        sections.append((".interp", 1, interp.encode() + b"\0", 0, 0))
    if dynamic:
        blob = b"".join(struct.pack(f"{e}qQ", tag, value) for tag, value in entries)
        sections.append((".dynstr", 3, bytes(dynstr), 0, 0))
        sections.append((".dynamic", 6, blob, len(sections), 16))
    for name in extra_sections:
        sections.append((name, 1, b"data", 0, 0))

    shstrtab = bytearray(b"\0")
    names = []
    for name, *_ in sections:
        names.append(len(shstrtab))
        shstrtab.extend(name.encode() + b"\0")
    names.append(len(shstrtab))
    shstrtab.extend(b".shstrtab\0")
    sections.append((".shstrtab", 3, bytes(shstrtab), 0, 0))

    phnum = 1 if interp is not None else 0
    start = 64 + 56 * phnum
    body = bytearray()
    offsets = []
    for _, _, data, _, _ in sections:
        offsets.append(start + len(body))
        body.extend(data)
    shoff = start + len(body)

    ident = b"\x7fELF" + bytes([2, 1 if e == "<" else 2, 1]) + bytes(9)
    header = ident + struct.pack(
        f"{e}HHIQQQIHHHHHH",
        3, 62, 1, 0, 64 if phnum else 0, shoff, 0, 64, 56, phnum, 64,
        len(sections) + 1, len(sections),
    )
    program = b""
    if interp is not None:
        size = len(sections[0][2])
        program = struct.pack(f"{e}IIQQQQQQ", 3, 4, offsets[0], 0, 0, size, size, 1)
    headers = bytes(64)
    for (name, kind, data, link, entsize), name_off, data_off in zip(sections, names, offsets):
        headers += struct.pack(
            f"{e}IIQQQQIIQQ", name_off, kind, 0, 0, data_off, len(data), link, 0, 1, entsize
        )
    return header + program + bytes(body) + headers


def test_interpreter_is_read_from_pt_interp():
    elf = ElfFile(build_elf(interp="/lib/ld-musl-x86_64.so.1"))
    assert elf.interpreter() == "/lib/ld-musl-x86_64.so.1"


def test_interpreter_missing_gives_empty_string():
    assert ElfFile(build_elf(soname="libfoo.so.1")).interpreter() == ""


def test_imported_libraries_keep_order():
    elf = ElfFile(build_elf(needed=["libz.so.1", "libc.musl-x86_64.so.1"]))
    assert elf.imported_libraries() == ["libz.so.1", "libc.musl-x86_64.so.1"]
    assert elf.sonames() == []


def test_sonames():
    elf = ElfFile(build_elf(needed=["libz.so.1"], soname="libfoo.so.1"))
    assert elf.sonames() == ["libfoo.so.1"]
    assert elf.imported_libraries() == ["libz.so.1"]


def test_no_dynamic_section_means_no_entries():
    elf = ElfFile(build_elf(dynamic=False))
    assert elf.sonames() == []
    assert elf.imported_libraries() == []


def test_has_section():
    elf = ElfFile(build_elf(extra_sections=[".debug"]))
    assert elf.has_section(".debug")
    assert elf.has_section(".dynamic")
    assert not elf.has_section(".zdebug")
    assert not ElfFile(build_elf()).has_section(".debug")


def test_big_endian_object():
    elf = ElfFile(build_elf(interp="/lib/ld.so", needed=["libm.so.6"], soname="libx.so.2", endian=">"))
    assert elf.interpreter() == "/lib/ld.so"
    assert elf.imported_libraries() == ["libm.so.6"]
    assert elf.sonames() == ["libx.so.2"]


def test_not_elf_raises():
    with pytest.raises(ElfError):
        ElfFile(b"#!/bin/sh\necho hello\n")


def test_truncated_header_raises():
    with pytest.raises(ElfError):
        ElfFile(build_elf()[:40])


def test_truncated_section_table_raises():
    with pytest.raises(ElfError):
        ElfFile(build_elf(soname="libfoo.so.1")[:-10])


def test_unknown_class_raises():
    data = bytearray(build_elf())
    data[4] = 7
    with pytest.raises(ElfError):
        ElfFile(bytes(data))