from __future__ import annotations

import codecs
from dataclasses import dataclass
from typing import Optional

from .errors import ConfigurationError

NOP = "nop"

# BOM-less byte orders for the bare names
_ALIASES = {
    "": "utf-8",
    "utf8": "utf-8",
    "utf16": "utf-16-le",
    "utf-16": "utf-16-le",
    "utf32": "utf-32-le",
    "utf-32": "utf-32-le",
}


@dataclass(frozen=True)
class Encoding:
    name: str
    codec: Optional[str]

    @property
    def newline(self) -> bytes:
        if self.codec is None:
            return b"\n"
        return "\n".encode(self.codec)

    @property
    def carriage_return(self) -> bytes:
        if self.codec is None:
            return b"\r"
        return "\r".encode(self.codec)

    def to_record(self, token: bytes) -> bytes:
        """Normalize a raw token to the bytes handed to emit.

        ``nop`` passes bytes through untouched; anything else is decoded
        with the configured codec and re-encoded as UTF-8.
        """
        if self.codec is None:
            return token
        return token.decode(self.codec, errors="replace").encode("utf-8")


def lookup(name: Optional[str]) -> Encoding:
    key = (name or "").strip().lower()
    if key == NOP:
        return Encoding(NOP, None)
    key = _ALIASES.get(key, key)
    try:
        info = codecs.lookup(key)
    except LookupError as e:
        raise ConfigurationError(f"unsupported encoding '{name}'") from e
    # text codecs only (rejects e.g. base64, zlib)
    try:
        "\n".encode(info.name)
    except (TypeError, LookupError, UnicodeError) as e:
        raise ConfigurationError(f"unsupported encoding '{name}'") from e
    return Encoding(info.name, info.name)
