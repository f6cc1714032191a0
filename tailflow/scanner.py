from __future__ import annotations

from typing import BinaryIO, Iterator, Optional, Tuple

from .splitter import SplitFunc

DEFAULT_READ_SIZE = 16 * 1024


class Scanner:
    """Feeds a file through a split function with a bounded buffer.

    Yields ``(advance, token)`` pairs. The buffer never grows past
    ``max_log_size``; a record that would overflow it is cut at
    ``max_log_size`` bytes and yielded as-is. Whatever the split function
    leaves unconsumed at EOF is reported in ``pending``.
    """

    def __init__(self, file: BinaryIO, split: SplitFunc, max_log_size: int, read_size: int = DEFAULT_READ_SIZE):
        self.file = file
        self.split = split
        self.max_log_size = max_log_size
        self.read_size = max(1, min(read_size, max_log_size))
        self.pending = 0

    def __iter__(self) -> Iterator[Tuple[int, Optional[bytes]]]:
        buf = b""
        eof = False
        while True:
            if buf or eof:
                advance, token = self.split(buf, eof)
                if advance < 0 or advance > len(buf):
                    raise ValueError(f"split function returned invalid advance {advance}")
                if advance > 0:
                    buf = buf[advance:]
                    yield advance, token
                    continue
                if eof:
                    break
            if len(buf) >= self.max_log_size:
                token, buf = buf[: self.max_log_size], buf[self.max_log_size:]
                yield len(token), token
                continue
            chunk = self.file.read(min(self.read_size, self.max_log_size - len(buf)))
            if not chunk:
                eof = True
            else:
                buf += chunk
        self.pending = len(buf)
