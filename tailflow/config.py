from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .errors import ConfigurationError
from .featuregate import ALLOW_FILE_DELETION, Registry, get_global_registry
from .finder import Finder
from .fingerprint import DEFAULT_FINGERPRINT_SIZE, MIN_FINGERPRINT_SIZE
from .manager import Manager
from .reader import EmitFunc, ReaderConfig, ReaderFactory
from .roller import Roller
from .splitter import (
    CustomSplitterFactory,
    MultilineConfig,
    MultilineSplitterFactory,
    SplitFunc,
    SplitterConfig,
    SplitterFactory,
)

DEFAULT_MAX_LOG_SIZE = 1024 * 1024
DEFAULT_MAX_CONCURRENT_FILES = 1024
DEFAULT_POLL_INTERVAL = 0.2

START_AT_BEGINNING = "beginning"
START_AT_END = "end"

_BYTE_UNITS = {
    "": 1, "b": 1,
    "kb": 1000, "kib": 1024,
    "mb": 1000 ** 2, "mib": 1024 ** 2,
    "gb": 1000 ** 3, "gib": 1024 ** 3,
}
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def parse_byte_size(value: Union[int, float, str]) -> int:
    """Parse ``1024``, ``"16KiB"`` or ``"1MB"`` into a byte count."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid byte size: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    m = _SIZE_RE.match(str(value))
    if not m:
        raise ConfigurationError(f"invalid byte size: {value!r}")
    unit = m.group(2).lower()
    if unit not in _BYTE_UNITS:
        raise ConfigurationError(f"invalid byte size unit '{m.group(2)}' in {value!r}")
    return int(float(m.group(1)) * _BYTE_UNITS[unit])


def parse_duration(value: Union[int, float, str]) -> float:
    """Parse seconds (``0.5``) or a suffixed string (``"200ms"``, ``"1m"``)."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    m = _SIZE_RE.match(str(value))
    if not m:
        raise ConfigurationError(f"invalid duration: {value!r}")
    unit = m.group(2).lower() or "s"
    if unit not in _DURATION_UNITS:
        raise ConfigurationError(f"invalid duration unit '{m.group(2)}' in {value!r}")
    return float(m.group(1)) * _DURATION_UNITS[unit]


@dataclass(frozen=True)
class Config:
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    include_file_name: bool = True
    include_file_path: bool = False
    include_file_name_resolved: bool = False
    include_file_path_resolved: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL
    start_at: str = START_AT_END
    fingerprint_size: int = DEFAULT_FINGERPRINT_SIZE
    max_log_size: int = DEFAULT_MAX_LOG_SIZE
    max_concurrent_files: int = DEFAULT_MAX_CONCURRENT_FILES
    delete_after_read: bool = False
    splitter: SplitterConfig = field(default_factory=SplitterConfig)

    @property
    def finder(self) -> Finder:
        return Finder(include=list(self.include), exclude=list(self.exclude))

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "Config":
        data = dict(data or {})
        kwargs: Dict[str, Any] = {}
        try:
            for key in ("include", "exclude"):
                if key in data:
                    val = data.pop(key) or []
                    kwargs[key] = [val] if isinstance(val, str) else [str(v) for v in val]
            for key in ("include_file_name", "include_file_path",
                        "include_file_name_resolved", "include_file_path_resolved", "delete_after_read"):
                if key in data:
                    val = data.pop(key)
                    if not isinstance(val, bool):
                        raise ConfigurationError(f"`{key}` must be true or false, got {val!r}")
                    kwargs[key] = val
            if "poll_interval" in data:
                kwargs["poll_interval"] = parse_duration(data.pop("poll_interval"))
            if "start_at" in data:
                kwargs["start_at"] = str(data.pop("start_at"))
            for key in ("fingerprint_size", "max_log_size"):
                if key in data:
                    kwargs[key] = parse_byte_size(data.pop(key))
            if "max_concurrent_files" in data:
                kwargs["max_concurrent_files"] = int(data.pop("max_concurrent_files"))

            split_kwargs: Dict[str, Any] = {}
            if "encoding" in data:
                split_kwargs["encoding"] = str(data.pop("encoding"))
            if "force_flush_period" in data:
                split_kwargs["force_flush_period"] = parse_duration(data.pop("force_flush_period"))
            if "multiline" in data:
                ml = dict(data.pop("multiline") or {})
                unknown_ml = set(ml) - {"line_start_pattern", "line_end_pattern"}
                if unknown_ml:
                    raise ConfigurationError(f"unknown multiline option(s): {', '.join(sorted(unknown_ml))}")
                split_kwargs["multiline"] = MultilineConfig(
                    line_start_pattern=ml.get("line_start_pattern"),
                    line_end_pattern=ml.get("line_end_pattern"),
                )
            if split_kwargs:
                kwargs["splitter"] = SplitterConfig(**split_kwargs)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid configuration value: {e}") from e
        if data:
            raise ConfigurationError(f"unknown option(s): {', '.join(sorted(data))}")
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        split = out.pop("splitter")
        out["encoding"] = split["encoding"]
        out["force_flush_period"] = split["force_flush_period"]
        out["multiline"] = {k: v for k, v in split["multiline"].items() if v}
        return out

    def validate(self) -> None:
        self.finder.validate()
        if self.max_log_size <= 0:
            raise ConfigurationError("`max_log_size` must be positive")
        if self.max_concurrent_files <= 1:
            raise ConfigurationError("`max_concurrent_files` must be greater than 1")
        if self.fingerprint_size < MIN_FINGERPRINT_SIZE:
            raise ConfigurationError(f"`fingerprint_size` must be at least {MIN_FINGERPRINT_SIZE} bytes")
        if self.poll_interval < 0:
            raise ConfigurationError("`poll_interval` must not be negative")
        if self.delete_after_read and self.start_at == START_AT_END:
            raise ConfigurationError("`delete_after_read` cannot be used with `start_at: end`")
        if self.start_at not in (START_AT_BEGINNING, START_AT_END):
            raise ConfigurationError(f"invalid start_at location '{self.start_at}'")

    def build(self, emit: EmitFunc, logger: Optional[logging.Logger] = None,
              gates: Optional[Registry] = None) -> Manager:
        """Validate and build a Manager with the configured splitter."""
        gates = gates or get_global_registry()
        if self.delete_after_read and not gates.is_enabled(ALLOW_FILE_DELETION):
            raise ConfigurationError(f"`delete_after_read` requires feature gate `{ALLOW_FILE_DELETION}`")
        self.validate()
        factory = MultilineSplitterFactory(self.splitter)
        # prove the splitter is buildable before anything starts
        factory.build(self.max_log_size)
        return self._build_manager(emit, factory, logger)

    def build_with_split_func(self, emit: EmitFunc, split_func: Optional[SplitFunc],
                              logger: Optional[logging.Logger] = None,
                              gates: Optional[Registry] = None) -> Manager:
        """Like ``build`` but records are carved by ``split_func``."""
        gates = gates or get_global_registry()
        if self.delete_after_read and not gates.is_enabled(ALLOW_FILE_DELETION):
            raise ConfigurationError(f"`delete_after_read` requires feature gate `{ALLOW_FILE_DELETION}`")
        self.validate()
        if split_func is None:
            raise ConfigurationError("must provide split function")
        factory = CustomSplitterFactory(split_func, self.splitter.force_flush_period, self.splitter.encoding)
        factory.build(self.max_log_size)
        return self._build_manager(emit, factory, logger)

    def _build_manager(self, emit: Optional[EmitFunc], factory: SplitterFactory,
                       logger: Optional[logging.Logger]) -> Manager:
        if emit is None:
            raise ConfigurationError("must provide emit function")
        base = logger or logging.getLogger("tailflow.manager")
        adapter = logging.LoggerAdapter(base, {"component": "fileconsumer"})
        reader_config = ReaderConfig(
            fingerprint_size=self.fingerprint_size,
            max_log_size=self.max_log_size,
            emit=emit,
            include_file_name=self.include_file_name,
            include_file_path=self.include_file_path,
            include_file_name_resolved=self.include_file_name_resolved,
            include_file_path_resolved=self.include_file_path_resolved,
        )
        reader_factory = ReaderFactory(
            config=reader_config,
            splitter_factory=factory,
            from_beginning=self.start_at == START_AT_BEGINNING,
            logger=adapter,
        )
        return Manager(
            finder=self.finder,
            reader_factory=reader_factory,
            roller=Roller(adapter),
            poll_interval=self.poll_interval,
            max_batch_files=self.max_concurrent_files // 2,
            delete_after_read=self.delete_after_read,
            logger=adapter,
        )


def load_config(path: Union[str, Path]) -> Config:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")
    return Config.from_dict(data)


def default_config_yaml() -> str:
    return """
# Files to tail. Globs support ** and {a,b}.
include: ["/var/log/app/*.log"]
exclude: ["/var/log/app/*.gz"]

# beginning | end (applies to files present at startup)
start_at: end
poll_interval: 200ms

fingerprint_size: 1KB
max_log_size: 1MiB
max_concurrent_files: 1024

include_file_name: true
include_file_path: false

encoding: utf-8
force_flush_period: 500ms
# multiline:
#   line_start_pattern: '^\\d{4}-\\d{2}-\\d{2}'

# Requires the filelog.allowFileDeletion feature gate and start_at: beginning
delete_after_read: false
"""
