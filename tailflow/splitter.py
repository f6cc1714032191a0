from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

from .encoding import Encoding, lookup
from .errors import ConfigurationError

# split(data, at_eof) -> (advance, token); (0, None) means "need more data"
SplitFunc = Callable[[bytes, bool], Tuple[int, Optional[bytes]]]

DEFAULT_FORCE_FLUSH_PERIOD = 0.5


@dataclass(frozen=True)
class MultilineConfig:
    line_start_pattern: Optional[str] = None
    line_end_pattern: Optional[str] = None


@dataclass(frozen=True)
class SplitterConfig:
    encoding: str = "utf-8"
    multiline: MultilineConfig = field(default_factory=MultilineConfig)
    force_flush_period: float = DEFAULT_FORCE_FLUSH_PERIOD


def newline_split_func(encoding: Encoding) -> SplitFunc:
    newline = encoding.newline
    cr = encoding.carriage_return

    def split(data: bytes, at_eof: bool) -> Tuple[int, Optional[bytes]]:
        if at_eof and not data:
            return 0, None
        i = data.find(newline)
        # utf-16/32 newlines must sit on a code unit boundary
        while i >= 0 and i % len(newline):
            i = data.find(newline, i + 1)
        if i < 0:
            return 0, None
        token = data[:i]
        if token.endswith(cr):
            token = token[: -len(cr)]
        return i + len(newline), token

    return split


def line_start_split_func(pattern: "re.Pattern[bytes]") -> SplitFunc:
    def split(data: bytes, at_eof: bool) -> Tuple[int, Optional[bytes]]:
        first = pattern.search(data)
        if first is None:
            return 0, None
        if first.start() != 0:
            # leading data before the first start marker is its own record
            return first.start(), data[: first.start()].strip()
        # look for the next start marker past this one
        nxt = pattern.search(data, max(first.end(), 1))
        if nxt is None:
            return 0, None
        return nxt.start(), data[: nxt.start()].strip()

    return split


def line_end_split_func(pattern: "re.Pattern[bytes]") -> SplitFunc:
    def split(data: bytes, at_eof: bool) -> Tuple[int, Optional[bytes]]:
        m = pattern.search(data)
        if m is None or m.end() == 0:
            return 0, None
        # a match touching the buffer end may still be growing
        if m.end() == len(data) and not at_eof:
            return 0, None
        return m.end(), data[: m.end()].strip()

    return split


class Flusher:
    """Forces out a trailing partial record that has stopped changing.

    A partial record only counts as stale when it is seen at EOF with the
    same length for at least ``force_period`` seconds.
    """

    def __init__(self, force_period: float = DEFAULT_FORCE_FLUSH_PERIOD, clock: Callable[[], float] = time.monotonic):
        self.force_period = force_period
        self.clock = clock
        self.last_data_change = clock()
        self.previous_length = 0

    def update(self, length: int) -> None:
        if length != self.previous_length:
            self.previous_length = length
            self.last_data_change = self.clock()

    def flushed(self) -> None:
        self.previous_length = 0
        self.last_data_change = self.clock()

    def should_flush(self) -> bool:
        if self.force_period <= 0 or self.previous_length <= 0:
            return False
        return self.clock() - self.last_data_change >= self.force_period

    def wrap(self, split: SplitFunc) -> SplitFunc:
        def flushing_split(data: bytes, at_eof: bool) -> Tuple[int, Optional[bytes]]:
            advance, token = split(data, at_eof)
            if token is not None or advance > 0:
                self.flushed()
                return advance, token
            if not at_eof or not data:
                return 0, None
            self.update(len(data))
            if self.should_flush():
                self.flushed()
                return len(data), data.strip()
            return 0, None

        return flushing_split


@dataclass
class Splitter:
    """Per-reader splitting strategy: boundary function plus decoder."""

    split: SplitFunc
    encoding: Encoding
    flusher: Flusher


class SplitterFactory:
    def build(self, max_log_size: int) -> Splitter:
        raise NotImplementedError


def _compile(pattern: str, key: str) -> "re.Pattern[bytes]":
    try:
        return re.compile(pattern.encode("utf-8"))
    except re.error as e:
        raise ConfigurationError(f"compile {key} regex: {e}") from e


class MultilineSplitterFactory(SplitterFactory):
    """Newline or regex-delimited records, selected once from config."""

    def __init__(self, config: SplitterConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.clock = clock

    def build(self, max_log_size: int) -> Splitter:
        if max_log_size <= 0:
            raise ConfigurationError("`max_log_size` must be positive")
        enc = lookup(self.config.encoding)
        ml = self.config.multiline
        if ml.line_start_pattern and ml.line_end_pattern:
            raise ConfigurationError("only one of line_start_pattern or line_end_pattern can be set")
        if ml.line_start_pattern:
            if enc.codec is not None and len(enc.newline) > 1:
                raise ConfigurationError(f"multiline patterns are not supported with encoding '{enc.name}'")
            split = line_start_split_func(_compile(ml.line_start_pattern, "line_start_pattern"))
        elif ml.line_end_pattern:
            if enc.codec is not None and len(enc.newline) > 1:
                raise ConfigurationError(f"multiline patterns are not supported with encoding '{enc.name}'")
            split = line_end_split_func(_compile(ml.line_end_pattern, "line_end_pattern"))
        else:
            split = newline_split_func(enc)
        flusher = Flusher(self.config.force_flush_period, clock=self.clock)
        return Splitter(split=flusher.wrap(split), encoding=enc, flusher=flusher)


class CustomSplitterFactory(SplitterFactory):
    """Caller-supplied split function; records are passed through as-is."""

    def __init__(self, split: SplitFunc, force_flush_period: float = DEFAULT_FORCE_FLUSH_PERIOD,
                 encoding: str = "utf-8", clock: Callable[[], float] = time.monotonic):
        self.split = split
        self.force_flush_period = force_flush_period
        self.encoding = encoding
        self.clock = clock

    def build(self, max_log_size: int) -> Splitter:
        if self.split is None:
            raise ConfigurationError("must provide split function")
        if max_log_size <= 0:
            raise ConfigurationError("`max_log_size` must be positive")
        flusher = Flusher(self.force_flush_period, clock=self.clock)
        return Splitter(split=flusher.wrap(self.split), encoding=lookup(self.encoding), flusher=flusher)
