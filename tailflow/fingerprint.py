from __future__ import annotations

import os
from dataclasses import dataclass
from typing import BinaryIO

DEFAULT_FINGERPRINT_SIZE = 1000
MIN_FINGERPRINT_SIZE = 16


@dataclass(frozen=True)
class Fingerprint:
    """Leading bytes of a file, used as the file's identity across polls.

    Two fingerprints identify the same stream when one is a prefix of the
    other, so a file keeps its identity while it grows past a shorter
    fingerprint taken earlier.
    """

    first_bytes: bytes = b""

    def __len__(self) -> int:
        return len(self.first_bytes)

    def is_empty(self) -> bool:
        return not self.first_bytes

    def matches(self, other: "Fingerprint") -> bool:
        # empty content has no identity
        if self.is_empty() or other.is_empty():
            return False
        n = min(len(self.first_bytes), len(other.first_bytes))
        return self.first_bytes[:n] == other.first_bytes[:n]

    def starts_with(self, other: "Fingerprint") -> bool:
        if other.is_empty() or len(other) > len(self):
            return False
        return self.first_bytes.startswith(other.first_bytes)

    def __repr__(self) -> str:
        preview = self.first_bytes[:16]
        return f"Fingerprint({preview!r}, len={len(self.first_bytes)})"


def compute(file: BinaryIO, size: int = DEFAULT_FINGERPRINT_SIZE) -> Fingerprint:
    """Read up to ``size`` bytes from the start of ``file``.

    Uses a positional read so the handle's current offset is untouched.
    """
    fd = file.fileno()
    if hasattr(os, "pread"):
        data = os.pread(fd, size, 0)
    else:
        pos = file.tell()
        try:
            file.seek(0)
            data = file.read(size)
        finally:
            file.seek(pos)
    return Fingerprint(bytes(data))
