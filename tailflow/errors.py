from __future__ import annotations

from typing import Optional


class TailflowError(Exception):
    pass


class ConfigurationError(TailflowError):
    """Invalid or unbuildable configuration. Raised at build time only."""


class DiscoveryError(TailflowError):
    """The finder failed during a tick; the tick is skipped."""


class ReadError(TailflowError):
    def __init__(self, path: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{path}: {message}")
        self.path = path
        self.cause = cause


class DeletionError(TailflowError):
    def __init__(self, path: str, cause: Optional[BaseException] = None):
        super().__init__(f"failed to delete {path}: {cause}")
        self.path = path
        self.cause = cause
