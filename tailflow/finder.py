from __future__ import annotations

import glob
import os
import sys
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import List

from .errors import ConfigurationError, DiscoveryError

# dotfiles match `*` like any other name; older interpreters always skip them
_GLOB_OPTIONS = {"include_hidden": True} if sys.version_info >= (3, 11) else {}


def expand_braces(pattern: str) -> List[str]:
    """Expand ``{a,b}`` alternatives, nested groups included.

    ``/logs/{app,db}/*.log`` -> ``/logs/app/*.log``, ``/logs/db/*.log``
    """
    start = pattern.find("{")
    if start < 0:
        return [pattern]
    depth = 0
    for i in range(start, len(pattern)):
        ch = pattern[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                end = i
                break
    else:
        return [pattern]
    # split the group body on top-level commas
    body = pattern[start + 1:end]
    parts: List[str] = []
    depth = 0
    last = 0
    for i, ch in enumerate(body):
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append(body[last:i])
            last = i + 1
    parts.append(body[last:])
    head, tail = pattern[:start], pattern[end + 1:]
    out: List[str] = []
    for p in parts:
        out.extend(expand_braces(head + p + tail))
    return out


def match_segments(pattern: List[str], parts: List[str]) -> bool:
    """Match a split path against a split glob, one segment at a time.

    ``*`` never crosses a separator; a ``**`` segment spans zero or more
    segments, as it does for includes.
    """
    if not pattern:
        return not parts
    head, rest = pattern[0], pattern[1:]
    if head == "**":
        return any(match_segments(rest, parts[i:]) for i in range(len(parts) + 1))
    if not parts:
        return False
    return fnmatch(parts[0], head) and match_segments(rest, parts[1:])


def validate_pattern(pattern: str) -> None:
    if not pattern:
        raise ConfigurationError("glob pattern must not be empty")
    if "\x00" in pattern:
        raise ConfigurationError(f"glob pattern contains a NUL byte: {pattern!r}")
    brace = 0
    bracket = False
    escaped = False
    for ch in pattern:
        if escaped:
            escaped = False
            continue
        if ch == "\\" and os.sep != "\\":
            escaped = True
        elif bracket:
            if ch == "]":
                bracket = False
        elif ch == "[":
            bracket = True
        elif ch == "{":
            brace += 1
        elif ch == "}":
            brace -= 1
            if brace < 0:
                raise ConfigurationError(f"unbalanced '}}' in glob pattern: {pattern}")
    if bracket:
        raise ConfigurationError(f"unterminated '[' in glob pattern: {pattern}")
    if brace:
        raise ConfigurationError(f"unterminated '{{' in glob pattern: {pattern}")


@dataclass(frozen=True)
class Finder:
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)

    def validate(self) -> None:
        if not self.include:
            raise ConfigurationError("required argument `include` is empty")
        for pat in self.include:
            try:
                validate_pattern(pat)
            except ConfigurationError as e:
                raise ConfigurationError(f"parse include glob: {e}") from e
        for pat in self.exclude:
            try:
                validate_pattern(pat)
            except ConfigurationError as e:
                raise ConfigurationError(f"parse exclude glob: {e}") from e

    def excluded(self, path: str) -> bool:
        parts = path.split(os.sep)
        for pat in self.exclude:
            for alt in expand_braces(pat):
                if match_segments(alt.split(os.sep), parts):
                    return True
        return False

    def find_files(self) -> List[str]:
        """Return the regular files matching any include and no exclude.

        Order follows the include list; duplicates are dropped.
        """
        seen = set()
        out: List[str] = []
        for pat in self.include:
            for alt in expand_braces(pat):
                try:
                    matches = sorted(glob.glob(alt, recursive=True, **_GLOB_OPTIONS))
                except OSError as e:
                    raise DiscoveryError(f"glob {alt}: {e}") from e
                for p in matches:
                    if p in seen:
                        continue
                    seen.add(p)
                    if not os.path.isfile(p):
                        continue
                    if self.excluded(p):
                        continue
                    out.append(p)
        return out
