from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import RangeError

_SPEC_RE = re.compile(r"^(\d*)-(\d*)$")


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte offsets into an object."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def parse_range(header: str | None, size: int) -> ByteRange | None:
    """Resolve a ``Range`` header against an object of ``size`` bytes.

    Returns ``None`` when the whole object should be sent: no header, or a
    unit other than ``bytes``. Only the first range of a list is honoured.

    Raises:
        RangeError: the range is malformed or lies outside the object.
    """
    if header is None or not header.strip():
        return None

    unit, sep, ranges = header.partition("=")
    if not sep:
        raise RangeError(header, size)
    if unit.strip().lower() != "bytes":
        return None

    match = _SPEC_RE.match(ranges.split(",")[0].strip())
    if match is None:
        raise RangeError(header, size)
    start_str, end_str = match.groups()

    if start_str:
        start = int(start_str)
        end = int(end_str) if end_str else size - 1
        if end < start or start >= size:
            raise RangeError(header, size)
        return ByteRange(start, min(end, size - 1))

    if not end_str:
        raise RangeError(header, size)
    suffix = int(end_str)
    if suffix == 0 or size == 0:
        raise RangeError(header, size)
    return ByteRange(max(size - suffix, 0), size - 1)
