from __future__ import annotations

import asyncio
import logging
import os
from typing import BinaryIO, List, Optional, Set, Tuple

from .errors import DeletionError, DiscoveryError
from .finder import Finder
from .fingerprint import Fingerprint, compute
from .reader import Reader, ReaderFactory, ReadResult
from .roller import Roller

# readers not rediscovered within this many ticks are forgotten
KNOWN_GENERATIONS = 3


class Manager:
    """Polls the finder and keeps one reader per logical file stream.

    All bookkeeping (``known_files``, ``seen_paths``) is touched only from
    the poll loop. Workers run ``Roller.read`` in threads and hand back
    ``ReadResult`` values that are folded in after each batch.
    """

    def __init__(
        self,
        finder: Finder,
        reader_factory: ReaderFactory,
        roller: Optional[Roller] = None,
        poll_interval: float = 0.2,
        max_batch_files: int = 512,
        delete_after_read: bool = False,
        logger: Optional[logging.LoggerAdapter] = None,
        max_known_files: Optional[int] = None,
    ):
        self.finder = finder
        self.reader_factory = reader_factory
        self.logger = logger or logging.LoggerAdapter(logging.getLogger("tailflow.manager"), {"component": "fileconsumer"})
        self.roller = roller or Roller(self.logger)
        self.poll_interval = poll_interval
        self.max_batch_files = max(1, max_batch_files)
        self.delete_after_read = delete_after_read
        self.max_known_files = max_known_files or KNOWN_GENERATIONS * 2 * self.max_batch_files
        self.known_files: List[Reader] = []
        self.seen_paths: Set[str] = set()
        self.first_check = True
        self.generation = 0
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    # lifecycle

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def run(self) -> None:
        """Poll until ``stop`` is called, then close every handle."""
        self._running = True
        await self._loop()

    async def _loop(self) -> None:
        self._stop_event = asyncio.Event()
        try:
            while self._running:
                await self.poll()
                if not self._running:
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.close()

    def stop(self) -> None:
        """Ask the loop to stop after the in-flight batch."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self) -> None:
        self.stop()
        if self._task is not None:
            await self._task
            self._task = None

    def close(self) -> None:
        self.roller.cleanup()
        for r in self.known_files:
            r.close()

    # polling

    async def poll(self) -> None:
        """One tick: discover, match, batch-read, evict."""
        self.generation += 1
        try:
            paths = await asyncio.to_thread(self.finder.find_files)
        except DiscoveryError as e:
            self.logger.error(f"Discovery failed, skipping tick: {e}")
            return
        if not paths:
            self.logger.debug(f"No files match the configured include patterns: {self.finder.include}")

        # paths holding a reader go first so no earlier batch can take it from them
        held = {r.path for r in self.known_files}
        paths = sorted(paths, key=lambda p: p not in held)

        claimed: Set[int] = set()
        tick_fps: List[Fingerprint] = []
        batches = [paths[i:i + self.max_batch_files] for i in range(0, len(paths), self.max_batch_files)] or [[]]
        for batch in batches:
            await self.consume(batch, claimed, tick_fps)

        self._clear_old_readers()
        self.first_check = False

    async def consume(self, paths: List[str], claimed: Set[int], tick_fps: List[Fingerprint]) -> None:
        readers = self.make_readers(paths, claimed, tick_fps)

        lost = await self.roller.read_lost_files(readers)
        self._fold(lost, deletable=False)

        results = await asyncio.gather(*(asyncio.to_thread(self.roller.read, r) for r in readers))
        self.roller.roll(readers)
        self._fold(list(results), deletable=self.delete_after_read)

    def make_readers(self, paths: List[str], claimed: Set[int], tick_fps: List[Fingerprint]) -> List[Reader]:
        opened: List[Tuple[str, BinaryIO, Fingerprint]] = []
        for path in paths:
            f = self._open(path)
            if f is None:
                continue
            try:
                fp = compute(f, self.reader_factory.config.fingerprint_size)
            except OSError as e:
                self.logger.warning(f"Failed to fingerprint {path}: {e}")
                f.close()
                continue
            if fp.is_empty():
                f.close()
                continue
            opened.append((path, f, fp))

        readers: List[Reader] = []
        rest: List[Tuple[str, BinaryIO, Fingerprint]] = []
        # a path keeps the reader it already holds before anything else may claim it
        for path, f, fp in opened:
            reader = self._held_reader(path, fp, claimed)
            if reader is None:
                rest.append((path, f, fp))
                continue
            if self._is_duplicate(path, f, fp, tick_fps):
                continue
            self._take(reader, f, path, fp)
            self._claim(reader, claimed, readers)
        for path, f, fp in rest:
            if self._is_duplicate(path, f, fp, tick_fps):
                continue
            reader = self._match(f, path, fp, claimed)
            if reader is None:
                reader = self._new_reader(f, path, fp)
            self._claim(reader, claimed, readers)
        return readers

    def _is_duplicate(self, path: str, f: BinaryIO, fp: Fingerprint, tick_fps: List[Fingerprint]) -> bool:
        # the same content reached through two paths is read once
        if any(fp.matches(other) for other in tick_fps):
            self.logger.debug(f"Skipping duplicate fingerprint: {path}")
            f.close()
            return True
        tick_fps.append(fp)
        return False

    def _claim(self, reader: Reader, claimed: Set[int], readers: List[Reader]) -> None:
        claimed.add(id(reader))
        reader.generation = self.generation
        readers.append(reader)

    def _held_reader(self, path: str, fp: Fingerprint, claimed: Set[int]) -> Optional[Reader]:
        for r in reversed(self.known_files):
            if id(r) not in claimed and r.path == path and r.fingerprint.matches(fp):
                return r
        return None

    def _take(self, reader: Reader, f: BinaryIO, path: str, fp: Fingerprint) -> None:
        reader.reattach(f, path, fp)
        self.known_files.remove(reader)
        self.known_files.append(reader)

    def _open(self, path: str) -> Optional[BinaryIO]:
        try:
            return open(path, "rb")
        except OSError as e:
            self.logger.warning(f"Failed to open file {path}: {e}")
            return None

    def _match(self, f: BinaryIO, path: str, fp: Fingerprint, claimed: Set[int]) -> Optional[Reader]:
        candidates = [
            (i, r) for i, r in enumerate(self.known_files)
            if id(r) not in claimed and r.fingerprint.matches(fp)
        ]
        if not candidates:
            return None
        # same path first, then the most specific fingerprint, then most recent
        _, reader = max(candidates, key=lambda c: (c[1].path == path, len(c[1].fingerprint), c[0]))
        if len(candidates) > 1:
            self.logger.debug(f"Ambiguous fingerprint for {path}: {len(candidates)} candidates, picked {reader.path}")
        self._take(reader, f, path, fp)
        return reader

    def _new_reader(self, f: BinaryIO, path: str, fp: Fingerprint) -> Reader:
        # files that show up after the first tick were written while we watched
        from_beginning = self.reader_factory.from_beginning if self.first_check else True
        if path not in self.seen_paths:
            if from_beginning:
                self.logger.info(f"Started watching file: {path}")
            else:
                self.logger.info(
                    f"Started watching file from end. To read preexisting logs, configure 'start_at' to 'beginning': {path}"
                )
            self.seen_paths.add(path)
        reader = self.reader_factory.new_reader(f, path, fp, from_beginning=from_beginning)
        self.known_files.append(reader)
        return reader

    def _fold(self, results: List[ReadResult], deletable: bool) -> None:
        for res in results:
            reader = res.reader
            if res.error is not None:
                self.logger.warning(f"Dropping reader: {res.error}")
                self._forget(reader)
                continue
            if deletable and res.drained and not reader.delete_failed:
                reader.close()
                try:
                    self._delete(reader.path)
                except DeletionError as e:
                    # logged once, the file is left in place and tailed as usual
                    self.logger.error(str(e))
                    reader.delete_failed = True
                    continue
                self._forget(reader)

    def _delete(self, path: str) -> None:
        try:
            os.remove(path)
        except OSError as e:
            raise DeletionError(path, e) from e
        self.logger.debug(f"Deleted fully read file: {path}")

    def _forget(self, reader: Reader) -> None:
        reader.close()
        try:
            self.known_files.remove(reader)
        except ValueError:
            pass

    def _clear_old_readers(self) -> None:
        keep: List[Reader] = []
        for r in self.known_files:
            if r.generation > self.generation - KNOWN_GENERATIONS:
                keep.append(r)
            else:
                r.close()
        overflow = len(keep) - self.max_known_files
        if overflow > 0:
            for r in keep[:overflow]:
                r.close()
            keep = keep[overflow:]
        self.known_files = keep

    def open_handles(self) -> int:
        return sum(1 for r in self.known_files if r.is_open)
