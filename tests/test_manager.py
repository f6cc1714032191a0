import asyncio
import os
import threading
import time
from pathlib import Path

from tailflow.config import Config
from tailflow.featuregate import ALLOW_FILE_DELETION, Registry
from tailflow.reader import ATTR_FILE_NAME, Reader
from tailflow.splitter import SplitterConfig


class Collector:
    def __init__(self):
        self.records = []
        self._lock = threading.Lock()

    def __call__(self, record, attributes):
        with self._lock:
            self.records.append((record, attributes))

    def bodies(self):
        return [r for r, _ in self.records]

    def take(self):
        out = self.bodies()
        self.records = []
        return out


def _deletion_gates():
    gates = Registry()
    gates.register(ALLOW_FILE_DELETION)
    gates.set(ALLOW_FILE_DELETION, True)
    return gates


def _manager(tmp_path: Path, out: Collector, **overrides):
    opts = dict(
        include=[str(tmp_path / "*.log")],
        start_at="beginning",
        splitter=SplitterConfig(force_flush_period=0),
    )
    opts.update(overrides)
    return Config(**opts).build(out)


def test_single_file_two_lines_then_quiet(tmp_path: Path):
    out = Collector()
    (tmp_path / "a.log").write_bytes(b"line1\nline2\n")
    m = _manager(tmp_path, out)

    asyncio.run(m.poll())
    assert out.bodies() == [b"line1", b"line2"]
    assert all(attrs == {ATTR_FILE_NAME: "a.log"} for _, attrs in out.records)

    out.take()
    asyncio.run(m.poll())
    assert out.bodies() == []
    m.close()


def test_appended_line_is_emitted_once(tmp_path: Path):
    out = Collector()
    f = tmp_path / "a.log"
    f.write_bytes(b"line1\nline2\n")
    m = _manager(tmp_path, out)
    asyncio.run(m.poll())
    out.take()

    with f.open("ab") as h:
        h.write(b"line3\n")
    asyncio.run(m.poll())
    assert out.bodies() == [b"line3"]
    m.close()


def test_no_duplicates_or_gaps_across_many_polls(tmp_path: Path):
    out = Collector()
    f = tmp_path / "a.log"
    f.write_bytes(b"")
    m = _manager(tmp_path, out)
    content = b"".join(b"record %d\n" % i for i in range(30))
    # chunk boundaries land mid-line
    for i in range(0, len(content), 7):
        with f.open("ab") as h:
            h.write(content[i:i + 7])
        asyncio.run(m.poll())
    assert out.bodies() == [b"record %d" % i for i in range(30)]
    m.close()


def test_start_at_end_only_applies_to_first_tick(tmp_path: Path):
    out = Collector()
    (tmp_path / "old.log").write_bytes(b"before\n")
    m = _manager(tmp_path, out, start_at="end")
    asyncio.run(m.poll())
    assert out.bodies() == []

    with (tmp_path / "old.log").open("ab") as h:
        h.write(b"after\n")
    (tmp_path / "new.log").write_bytes(b"fresh\n")
    asyncio.run(m.poll())
    assert sorted(out.bodies()) == [b"after", b"fresh"]
    m.close()


def test_truncation_recovery(tmp_path: Path):
    out = Collector()
    f = tmp_path / "a.log"
    f.write_bytes(b"header\nline2\nline3\n")
    m = _manager(tmp_path, out)
    asyncio.run(m.poll())
    out.take()

    with f.open("r+b") as h:
        h.truncate(0)
        h.write(b"header\n")
    asyncio.run(m.poll())
    assert out.take() == [b"header"]

    with f.open("ab") as h:
        h.write(b"more\n")
    asyncio.run(m.poll())
    assert out.take() == [b"more"]
    m.close()


def test_rotation_new_file_gets_new_reader_and_old_keeps_offset(tmp_path: Path):
    out = Collector()
    f = tmp_path / "a.log"
    f.write_bytes(b"old stream line 1\n")
    m = _manager(tmp_path, out, include=[str(tmp_path / "*.log*")])
    asyncio.run(m.poll())
    assert out.take() == [b"old stream line 1"]
    old_reader = m.known_files[0]

    rotated = tmp_path / "a.log.1"
    os.rename(f, rotated)
    with rotated.open("ab") as h:
        h.write(b"old stream line 2\n")
    f.write_bytes(b"new stream line 1\n")

    asyncio.run(m.poll())
    assert sorted(out.take()) == [b"new stream line 1", b"old stream line 2"]
    assert len(m.known_files) == 2
    assert old_reader in m.known_files
    assert old_reader.path == str(rotated)
    m.close()


def test_rotated_out_of_glob_is_drained(tmp_path: Path):
    out = Collector()
    f = tmp_path / "a.log"
    f.write_bytes(b"one\n")
    m = _manager(tmp_path, out)
    asyncio.run(m.poll())
    out.take()

    rotated = tmp_path / "a.old"
    os.rename(f, rotated)
    with rotated.open("ab") as h:
        h.write(b"two\n")
    asyncio.run(m.poll())
    assert out.take() == [b"two"]
    assert m.open_handles() == 0
    m.close()


def test_duplicate_content_is_read_once(tmp_path: Path):
    out = Collector()
    (tmp_path / "a.log").write_bytes(b"same content here\n")
    (tmp_path / "b.log").write_bytes(b"same content here\n")
    m = _manager(tmp_path, out)
    asyncio.run(m.poll())
    assert out.bodies() == [b"same content here"]
    assert len(m.known_files) == 1
    m.close()


def test_empty_file_is_skipped_until_it_has_content(tmp_path: Path):
    out = Collector()
    f = tmp_path / "a.log"
    f.write_bytes(b"")
    m = _manager(tmp_path, out)
    asyncio.run(m.poll())
    assert m.known_files == []
    f.write_bytes(b"now\n")
    asyncio.run(m.poll())
    assert out.bodies() == [b"now"]
    m.close()


def test_concurrency_bound(tmp_path: Path, monkeypatch):
    out = Collector()
    for i in range(12):
        (tmp_path / f"f{i:02d}.log").write_bytes(f"file {i} content\n".encode())
    m = _manager(tmp_path, out, max_concurrent_files=4)
    assert m.max_batch_files == 2

    active = {"now": 0, "peak": 0, "handles": 0}
    lock = threading.Lock()
    original = Reader.read_to_end

    def tracked(self):
        with lock:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            active["handles"] = max(active["handles"], m.open_handles())
        try:
            time.sleep(0.02)
            return original(self)
        finally:
            with lock:
                active["now"] -= 1

    monkeypatch.setattr(Reader, "read_to_end", tracked)
    asyncio.run(m.poll())
    assert len(out.bodies()) == 12
    assert active["peak"] <= 2
    assert active["handles"] <= 4
    m.close()


def test_read_error_drops_reader_but_manager_continues(tmp_path: Path):
    out = Collector()
    (tmp_path / "a.log").write_bytes(b"a\n")
    (tmp_path / "b.log").write_bytes(b"b\n")
    calls = []

    def flaky(record, attrs):
        calls.append(record)
        if record == b"a":
            raise RuntimeError("sink rejected record")
        out(record, attrs)

    m = Config(include=[str(tmp_path / "*.log")], start_at="beginning").build(flaky)
    asyncio.run(m.poll())
    assert out.bodies() == [b"b"]
    assert [r.path for r in m.known_files] == [str(tmp_path / "b.log")]
    m.close()


def test_discovery_error_skips_tick(tmp_path: Path, monkeypatch):
    from tailflow.errors import DiscoveryError
    from tailflow.finder import Finder

    out = Collector()
    m = _manager(tmp_path, out)

    def broken(self):
        raise DiscoveryError("disk on fire")

    monkeypatch.setattr(Finder, "find_files", broken)
    asyncio.run(m.poll())
    assert m.known_files == []


def test_delete_after_read(tmp_path: Path):
    out = Collector()
    done = tmp_path / "done.log"
    partial = tmp_path / "partial.log"
    done.write_bytes(b"complete\n")
    partial.write_bytes(b"first line\nincomple")
    m = Config(
        include=[str(tmp_path / "*.log")],
        start_at="beginning",
        delete_after_read=True,
        splitter=SplitterConfig(force_flush_period=0),
    ).build(out, gates=_deletion_gates())
    asyncio.run(m.poll())
    assert not done.exists()
    assert partial.exists()
    assert [r.path for r in m.known_files] == [str(partial)]
    m.close()


def test_failed_delete_is_logged_once_and_file_still_tailed(tmp_path: Path, monkeypatch, caplog):
    out = Collector()
    f = tmp_path / "a.log"
    f.write_bytes(b"one\n")
    m = Config(
        include=[str(tmp_path / "*.log")],
        start_at="beginning",
        delete_after_read=True,
    ).build(out, gates=_deletion_gates())
    attempts = []

    def refuse(path):
        attempts.append(path)
        raise PermissionError(13, "read-only file system", path)

    monkeypatch.setattr(os, "remove", refuse)
    for _ in range(3):
        asyncio.run(m.poll())
    with f.open("ab") as h:
        h.write(b"two\n")
    asyncio.run(m.poll())

    assert attempts == [str(f)]
    assert len([r for r in caplog.records if r.levelname == "ERROR"]) == 1
    assert out.bodies() == [b"one", b"two"]
    assert [r.path for r in m.known_files] == [str(f)]
    m.close()


def test_shorter_copy_of_header_does_not_steal_tracked_reader(tmp_path: Path):
    out = Collector()
    tracked = tmp_path / "b.log"
    tracked.write_bytes(b"#header v1\nentry 1\n")
    # one file per batch, so the newcomer sorts into an earlier batch
    m = _manager(tmp_path, out, max_concurrent_files=2)
    asyncio.run(m.poll())
    assert out.take() == [b"#header v1", b"entry 1"]

    (tmp_path / "a.log").write_bytes(b"#header v1\n")
    for line in (b"entry 2\n", b"entry 3\n"):
        with tracked.open("ab") as h:
            h.write(line)
        asyncio.run(m.poll())

    assert out.take() == [b"entry 2", b"entry 3"]
    assert [r.path for r in m.known_files] == [str(tracked)]
    m.close()


def test_forgets_readers_not_seen_recently(tmp_path: Path):
    out = Collector()
    f = tmp_path / "a.log"
    f.write_bytes(b"x\n")
    m = _manager(tmp_path, out)
    asyncio.run(m.poll())
    f.unlink()
    for _ in range(3):
        asyncio.run(m.poll())
    assert m.known_files == []


def test_run_loop_stops_and_closes(tmp_path: Path):
    out = Collector()
    f = tmp_path / "a.log"
    f.write_bytes(b"first\n")
    m = _manager(tmp_path, out, poll_interval=0.02)

    async def run_case():
        await m.start()
        await asyncio.sleep(0.1)
        with f.open("ab") as h:
            h.write(b"second\n")
        await asyncio.sleep(0.15)
        await m.shutdown()

    asyncio.run(run_case())
    assert out.bodies() == [b"first", b"second"]
    assert m.open_handles() == 0
