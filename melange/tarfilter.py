"""A readable stream that passes through only part of a tar archive."""

from __future__ import annotations

import io
import tarfile
from typing import BinaryIO, Iterator


class _Sink:
    """Write target that collects bytes for the reader to hand out."""

    def __init__(self) -> None:
        self.pending = bytearray()
        self._written = 0

    def write(self, data: bytes) -> int:
        self.pending += data
        self._written += len(data)
        return len(data)

    def tell(self) -> int:
        return self._written


class TarFilter(io.RawIOBase):
    """Read a tar archive from ``stream`` and yield a tar archive of the entries under ``only``.

    A leading '/' is removed from ``only`` to match how archives store names.
    The entry named exactly ``only`` is dropped.  With ``trim`` the prefix, and
    one following '/', is removed from the names of the entries kept.
    """

    def __init__(self, stream: BinaryIO, only: str, trim: bool) -> None:
        super().__init__()
        self._stream = stream
        self._only = only.removeprefix("/")
        self._trim = trim
        self._sink = _Sink()
        self._reader: tarfile.TarFile | None = None
        self._writer: tarfile.TarFile | None = None
        self._members: Iterator[tarfile.TarInfo] | None = None
        self._done = False

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        pending = self._sink.pending
        while not pending and not self._done:
            self._advance()
        count = min(len(buffer), len(pending))
        buffer[:count] = pending[:count]
        del pending[:count]
        return count

    def close(self) -> None:
        if not self.closed:
            try:
                self._stream.close()
            finally:
                super().close()

    def _advance(self) -> None:
        if self._members is None:
            self._reader = tarfile.open(fileobj=self._stream, mode="r|")
            self._writer = tarfile.open(fileobj=self._sink, mode="w")
            self._members = iter(self._reader)

        assert self._reader is not None and self._writer is not None
        for member in self._members:
            name = member.name
            if name == self._only or not name.startswith(self._only):
                continue
            if self._trim:
                member.name = name.removeprefix(self._only).removeprefix("/")
            data = self._reader.extractfile(member) if member.isreg() else None
            self._writer.addfile(member, data)
            return

        self._writer.close()
        self._done = True