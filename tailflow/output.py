from __future__ import annotations

import json
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional, TextIO


class JsonLinesSink:
    """Emit callback that writes one JSON object per record.

    Readers call ``emit`` from worker threads, so writes are serialized.
    """

    def __init__(self, path: Optional[Path] = None, stream: Optional[TextIO] = None):
        self.path = path
        self.stream = stream
        self.count = 0
        self._lock = threading.Lock()
        self._fh: Optional[TextIO] = None
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = self.path.open("a", encoding="utf-8")

    def emit(self, record: bytes, attributes: Dict[str, Any]) -> None:
        evt = {
            "body": record.decode("utf-8", errors="replace"),
            "attributes": attributes,
            "ts": time.time(),
        }
        line = json.dumps(evt, ensure_ascii=False) + "\n"
        with self._lock:
            out = self._fh or self.stream or sys.stdout
            out.write(line)
            out.flush()
            self.count += 1

    __call__ = emit

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None
