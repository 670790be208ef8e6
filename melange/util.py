"""Small helpers shared across the build tooling."""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import urllib.error
import urllib.request
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, MutableSequence, Protocol, TypeVar

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_CHUNK = 64 * 1024

T = TypeVar("T")


class _Digest(Protocol):
    def update(self, data: bytes, /) -> None: ...

    def hexdigest(self) -> str: ...


def source_date_epoch(default_time: datetime, logger: logging.Logger | None = None) -> datetime:
    """Return the time given by SOURCE_DATE_EPOCH, or ``default_time`` when it is unset.

    The variable must hold a decimal integer number of seconds; anything else
    raises ValueError.  The result is a timezone-aware UTC datetime.
    """
    value = os.environ.get("SOURCE_DATE_EPOCH", "").strip()
    if not value:
        if logger is not None:
            logger.warning(
                "SOURCE_DATE_EPOCH is specified but empty, setting it to %s", default_time
            )
        return default_time

    if not _INTEGER_RE.fullmatch(value):
        raise ValueError(f"failed to parse SOURCE_DATE_EPOCH: invalid syntax: {value!r}")
    seconds = int(value)
    if not _INT64_MIN <= seconds <= _INT64_MAX:
        raise ValueError(f"failed to parse SOURCE_DATE_EPOCH: value out of range: {value!r}")

    try:
        return _EPOCH + timedelta(seconds=seconds)
    except OverflowError as exc:
        raise ValueError(f"failed to parse SOURCE_DATE_EPOCH: {exc}") from exc


class _DropRefererRedirect(urllib.request.HTTPRedirectHandler):
    """Follow redirects without carrying a Referer header along."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        new_request = super().redirect_request(req, fp, code, msg, headers, newurl)
        if new_request is not None:
            new_request.remove_header("Referer")
        return new_request


def download_file(uri: str) -> str:
    """Download ``uri`` into a temporary file and return the file's path.

    Raises OSError when the server answers with anything other than 200.
    """
    opener = urllib.request.build_opener(_DropRefererRedirect())
    request = urllib.request.Request(uri, method="GET", headers={"Accept": "text/html"})

    fd, target = tempfile.mkstemp(prefix="melange-update-")
    try:
        with os.fdopen(fd, "wb") as out:
            try:
                response = opener.open(request)
            except urllib.error.HTTPError as exc:
                raise OSError(f"got {exc.code} {exc.reason} when fetching {uri}") from exc
            with response:
                if response.status != 200:
                    raise OSError(
                        f"got {response.status} {response.reason} when fetching {uri}"
                    )
                shutil.copyfileobj(response, out)
    except BaseException:
        os.remove(target)
        raise
    return target


def hash_file(path: str | os.PathLike[str], digest: _Digest) -> str:
    """Feed the file at ``path`` into ``digest`` and return its hex digest."""
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def right_join_map(left: Mapping[str, Any], right: Mapping[str, Any]) -> dict[str, Any]:
    """Merge two mappings; values from ``right`` win on shared keys."""
    return {**left, **right}


def reverse_slice(items: MutableSequence[Any]) -> None:
    """Reverse ``items`` in place."""
    items.reverse()


def contains(items: Iterable[T], element: T) -> bool:
    """Tell whether ``element`` is among ``items``."""
    return element in items