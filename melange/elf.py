"""A small reader for the parts of ELF objects that dependency analysis needs."""

from __future__ import annotations

import struct
from dataclasses import dataclass

_MAGIC = b"\x7fELF"

_ELFCLASS32 = 1
_ELFCLASS64 = 2
_ELFDATA2LSB = 1
_ELFDATA2MSB = 2

_PT_INTERP = 3
_SHT_DYNAMIC = 6
_SHT_NOBITS = 8
_DT_NEEDED = 1
_DT_SONAME = 14


class ElfError(ValueError):
    """Raised when data is not a well-formed ELF object."""


@dataclass(frozen=True)
class _Section:
    name: str
    type: int
    offset: int
    size: int
    link: int


@dataclass(frozen=True)
class _Segment:
    type: int
    offset: int
    filesz: int


def _cstring(table: bytes, offset: int) -> str | None:
    if offset >= len(table):
        return None
    end = table.find(b"\0", offset)
    if end < 0:
        return None
    return table[offset:end].decode("utf-8", "replace")


class ElfFile:
    """An ELF object parsed from its bytes.

    Both 32- and 64-bit objects of either byte order are understood.
    Malformed input raises ElfError.
    """

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        if len(self._data) < 16 or self._data[:4] != _MAGIC:
            raise ElfError("bad magic number")

        elf_class = self._data[4]
        if elf_class == _ELFCLASS64:
            self._is64 = True
        elif elf_class == _ELFCLASS32:
            self._is64 = False
        else:
            raise ElfError(f"unknown ELF class {elf_class}")

        encoding = self._data[5]
        if encoding == _ELFDATA2LSB:
            self._endian = "<"
        elif encoding == _ELFDATA2MSB:
            self._endian = ">"
        else:
            raise ElfError(f"unknown ELF data encoding {encoding}")

        header_format = "HHIQQQIHHHHHH" if self._is64 else "HHIIIIIHHHHHH"
        (
            _type,
            _machine,
            _version,
            _entry,
            phoff,
            shoff,
            _flags,
            _ehsize,
            phentsize,
            phnum,
            shentsize,
            shnum,
            shstrndx,
        ) = self._unpack(header_format, 16, "file header")

        self._segments = [
            self._read_segment(phoff + index * phentsize) for index in range(phnum)
        ]

        raw_sections = [
            self._read_section(shoff + index * shentsize) for index in range(shnum)
        ]
        if raw_sections and shstrndx >= len(raw_sections):
            raise ElfError(f"invalid section name table index {shstrndx}")

        names = b""
        if raw_sections:
            names = self._payload(*raw_sections[shstrndx][1:3], raw_sections[shstrndx][0])
        self._sections = [
            _Section(
                name=_cstring(names, name_offset) or "",
                type=kind,
                offset=offset,
                size=size,
                link=link,
            )
            for name_offset, kind, offset, size, link in (
                (entry[4], entry[0], entry[1], entry[2], entry[3]) for entry in raw_sections
            )
        ]

    def _unpack(self, fmt: str, offset: int, what: str) -> tuple[int, ...]:
        try:
            return struct.unpack_from(self._endian + fmt, self._data, offset)
        except struct.error as exc:
            raise ElfError(f"truncated {what} at offset {offset}") from exc

    def _read_segment(self, offset: int) -> _Segment:
        if self._is64:
            kind, _flags, seg_offset, _vaddr, _paddr, filesz, _memsz, _align = self._unpack(
                "IIQQQQQQ", offset, "program header"
            )
        else:
            kind, seg_offset, _vaddr, _paddr, filesz, _memsz, _flags, _align = self._unpack(
                "IIIIIIII", offset, "program header"
            )
        return _Segment(type=kind, offset=seg_offset, filesz=filesz)

    def _read_section(self, offset: int) -> tuple[int, int, int, int, int]:
        fmt = "IIQQQQIIQQ" if self._is64 else "IIIIIIIIII"
        name, kind, _flags, _addr, sec_offset, size, link, _info, _align, _entsize = (
            self._unpack(fmt, offset, "section header")
        )
        return kind, sec_offset, size, link, name

    def _payload(self, offset: int, size: int, kind: int) -> bytes:
        if kind == _SHT_NOBITS:
            return b""
        if offset + size > len(self._data):
            raise ElfError(f"section data at offset {offset} runs past end of file")
        return self._data[offset : offset + size]

    def _section_data(self, section: _Section) -> bytes:
        return self._payload(section.offset, section.size, section.type)

    def _dyn_strings(self, tag: int) -> list[str]:
        dynamic = next((s for s in self._sections if s.type == _SHT_DYNAMIC), None)
        if dynamic is None:
            return []
        data = self._section_data(dynamic)
        if dynamic.link >= len(self._sections):
            raise ElfError(f"invalid string table index {dynamic.link}")
        strings = self._section_data(self._sections[dynamic.link])

        entry_format = self._endian + ("qQ" if self._is64 else "iI")
        entry_size = struct.calcsize(entry_format)
        usable = len(data) - len(data) % entry_size
        found = []
        for entry_tag, value in struct.iter_unpack(entry_format, data[:usable]):
            if entry_tag == tag:
                text = _cstring(strings, value)
                if text is not None:
                    found.append(text)
        return found

    def has_section(self, name: str) -> bool:
        """Tell whether a section with exactly this name exists."""
        return any(section.name == name for section in self._sections)

    def interpreter(self) -> str:
        """Return the program interpreter named by PT_INTERP, or '' if there is none."""
        for segment in self._segments:
            if segment.type == _PT_INTERP:
                raw = self._data[segment.offset : segment.offset + segment.filesz]
                return raw.strip(b"\0").decode("utf-8", "replace")
        return ""

    def imported_libraries(self) -> list[str]:
        """Return the DT_NEEDED entries of the dynamic section."""
        return self._dyn_strings(_DT_NEEDED)

    def sonames(self) -> list[str]:
        """Return the DT_SONAME entries of the dynamic section."""
        return self._dyn_strings(_DT_SONAME)