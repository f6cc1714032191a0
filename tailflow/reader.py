from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Dict, Optional

from .errors import ReadError
from .fingerprint import Fingerprint, compute
from .scanner import Scanner
from .splitter import Splitter, SplitterFactory

EmitFunc = Callable[[bytes, Dict[str, Any]], None]

ATTR_FILE_NAME = "log.file.name"
ATTR_FILE_PATH = "log.file.path"
ATTR_FILE_NAME_RESOLVED = "log.file.name_resolved"
ATTR_FILE_PATH_RESOLVED = "log.file.path_resolved"


@dataclass(frozen=True)
class ReaderConfig:
    fingerprint_size: int
    max_log_size: int
    emit: EmitFunc
    include_file_name: bool = True
    include_file_path: bool = False
    include_file_name_resolved: bool = False
    include_file_path_resolved: bool = False


@dataclass
class ReadResult:
    """Outcome of one worker pass over a reader, folded back by the manager."""

    reader: "Reader"
    consumed: int = 0
    records: int = 0
    eof: bool = False
    pending: int = 0
    error: Optional[ReadError] = None

    @property
    def drained(self) -> bool:
        return self.error is None and self.eof and self.pending == 0


class Reader:
    """One logical stream: fingerprint, offset and (maybe) an open handle."""

    def __init__(self, config: ReaderConfig, splitter: Splitter, file: BinaryIO, path: str,
                 fingerprint: Fingerprint, logger: Optional[logging.LoggerAdapter] = None):
        self.config = config
        self.splitter = splitter
        self.file: Optional[BinaryIO] = file
        self.path = path
        self.fingerprint = fingerprint
        self.offset = 0
        self.generation = 0
        self.delete_failed = False
        self.attributes: Dict[str, Any] = {}
        self.logger = logger or logging.LoggerAdapter(logging.getLogger("tailflow.reader"), {})
        self._set_attributes()

    def _set_attributes(self) -> None:
        attrs: Dict[str, Any] = {}
        if self.config.include_file_name:
            attrs[ATTR_FILE_NAME] = os.path.basename(self.path)
        if self.config.include_file_path:
            attrs[ATTR_FILE_PATH] = self.path
        if self.config.include_file_name_resolved or self.config.include_file_path_resolved:
            try:
                resolved = os.path.realpath(self.path)
            except OSError:
                resolved = self.path
            if self.config.include_file_name_resolved:
                attrs[ATTR_FILE_NAME_RESOLVED] = os.path.basename(resolved)
            if self.config.include_file_path_resolved:
                attrs[ATTR_FILE_PATH_RESOLVED] = resolved
        self.attributes = attrs

    @property
    def is_open(self) -> bool:
        return self.file is not None

    def seek_to_end(self) -> None:
        if self.file is None:
            return
        self.offset = os.fstat(self.file.fileno()).st_size

    def reattach(self, file: BinaryIO, path: str, fingerprint: Fingerprint) -> None:
        """Point this reader at a freshly opened handle for its stream.

        Keeps offset and splitter state. The fingerprint is kept when it is
        the longer of the two so identity never shrinks.
        """
        if self.file is not None and self.file is not file:
            self.close()
        self.file = file
        if len(fingerprint) > len(self.fingerprint):
            self.fingerprint = fingerprint
        if path != self.path:
            self.path = path
            self._set_attributes()

    def size(self) -> int:
        if self.file is None:
            raise ReadError(self.path, "file is not open")
        return os.fstat(self.file.fileno()).st_size

    def current_fingerprint(self, size: Optional[int] = None) -> Fingerprint:
        if self.file is None:
            raise ReadError(self.path, "file is not open")
        return compute(self.file, size or self.config.fingerprint_size)

    def reset(self, fingerprint: Optional[Fingerprint] = None) -> None:
        """Forget progress after truncation.

        Identity is kept: the stored fingerprint may only shrink to the
        surviving prefix of itself.
        """
        self.offset = 0
        if fingerprint is not None and not fingerprint.is_empty() and self.fingerprint.starts_with(fingerprint):
            self.fingerprint = fingerprint
        self.splitter.flusher.flushed()

    def read_to_end(self) -> ReadResult:
        """Emit every complete record between the tracked offset and EOF.

        The offset only moves past bytes that ended up in a record, so a
        trailing partial record is read again on the next call.
        """
        result = ReadResult(self)
        if self.file is None:
            result.error = ReadError(self.path, "file is not open")
            return result
        try:
            self.file.seek(self.offset)
            scanner = Scanner(self.file, self.splitter.split, self.config.max_log_size)
            for advance, token in scanner:
                self.offset += advance
                result.consumed += advance
                if token is None:
                    continue
                record = self.splitter.encoding.to_record(token)
                if not record:
                    continue
                self.config.emit(record, dict(self.attributes))
                result.records += 1
            result.eof = True
            result.pending = scanner.pending
            self._refresh_fingerprint()
        except OSError as e:
            result.error = ReadError(self.path, f"read failed: {e}", e)
        except Exception as e:
            self.logger.exception(f"emit failed for {self.path}")
            result.error = ReadError(self.path, f"emit failed: {e}", e)
        return result

    def _refresh_fingerprint(self) -> None:
        if len(self.fingerprint) >= self.config.fingerprint_size:
            return
        fp = compute(self.file, self.config.fingerprint_size)
        # only grow; a mismatch is the roller's business
        if len(fp) > len(self.fingerprint) and fp.starts_with(self.fingerprint):
            self.fingerprint = fp

    def close(self) -> None:
        if self.file is None:
            return
        try:
            self.file.close()
        except OSError as e:
            self.logger.debug(f"closing {self.path}: {e}")
        self.file = None

    def __repr__(self) -> str:
        return f"Reader(path={self.path!r}, offset={self.offset}, fingerprint={self.fingerprint!r})"


@dataclass
class ReaderFactory:
    config: ReaderConfig
    splitter_factory: SplitterFactory
    from_beginning: bool
    logger: logging.LoggerAdapter = field(
        default_factory=lambda: logging.LoggerAdapter(logging.getLogger("tailflow.reader"), {"component": "fileconsumer"})
    )

    def new_reader(self, file: BinaryIO, path: str, fingerprint: Fingerprint,
                   from_beginning: Optional[bool] = None) -> Reader:
        splitter = self.splitter_factory.build(self.config.max_log_size)
        reader = Reader(self.config, splitter, file, path, fingerprint, logger=self.logger)
        start = self.from_beginning if from_beginning is None else from_beginning
        if not start:
            reader.seek_to_end()
        return reader
