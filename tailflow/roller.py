from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional

from .errors import ReadError
from .reader import Reader, ReadResult

OK = "ok"
TRUNCATED = "truncated"
REPLACED = "replaced"


class Roller:
    """Rotation and truncation handling.

    ``check`` runs inside a worker before each read. ``read_lost_files``,
    ``roll`` and ``cleanup`` run on the poll loop between batches and keep
    the previous batch's handles open just long enough to drain files that
    were rotated out of the glob.
    """

    def __init__(self, logger: Optional[logging.LoggerAdapter] = None):
        self.logger = logger or logging.LoggerAdapter(logging.getLogger("tailflow.roller"), {"component": "fileconsumer"})
        self.last_batch: List[Reader] = []

    def check(self, reader: Reader) -> str:
        stored = reader.fingerprint
        current = reader.current_fingerprint(len(stored) or None)
        if not current.is_empty() and not current.matches(stored):
            self.logger.info(f"File replaced in place, closing reader: {reader.path}")
            reader.close()
            return REPLACED
        size = reader.size()
        if size < reader.offset:
            self.logger.info(f"File truncated ({size} < {reader.offset}), reading from start: {reader.path}")
            reader.reset(current)
            return TRUNCATED
        return OK

    def read(self, reader: Reader) -> ReadResult:
        """Worker entry point: check, then read to EOF."""
        try:
            status = self.check(reader)
        except ReadError as e:
            return ReadResult(reader, error=e)
        except OSError as e:
            return ReadResult(reader, error=ReadError(reader.path, f"stat failed: {e}", e))
        if status == REPLACED:
            return ReadResult(reader, error=ReadError(reader.path, "file replaced in place"))
        return reader.read_to_end()

    def lost_readers(self, current: Iterable[Reader]) -> List[Reader]:
        current_ids = {id(r) for r in current}
        lost: List[Reader] = []
        for old in self.last_batch:
            if id(old) in current_ids or not old.is_open:
                continue
            if any(old.fingerprint.matches(r.fingerprint) for r in current):
                continue
            lost.append(old)
        return lost

    async def read_lost_files(self, current: List[Reader]) -> List[ReadResult]:
        """Drain files from the previous batch that vanished from this one."""
        lost = self.lost_readers(current)
        if not lost:
            return []
        for r in lost:
            self.logger.debug(f"Draining lost file: {r.path}")
        return list(await asyncio.gather(*(asyncio.to_thread(self.read, r) for r in lost)))

    def roll(self, current: List[Reader]) -> None:
        current_ids = {id(r) for r in current}
        for old in self.last_batch:
            if id(old) not in current_ids:
                old.close()
        self.last_batch = list(current)

    def cleanup(self) -> None:
        for r in self.last_batch:
            r.close()
        self.last_batch = []
