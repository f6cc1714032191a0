from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from .errors import ConfigurationError

ALPHA = "alpha"
BETA = "beta"
STABLE = "stable"

ALLOW_FILE_DELETION = "filelog.allowFileDeletion"

ENV_VAR = "TAILFLOW_FEATURE_GATES"


@dataclass
class Gate:
    id: str
    stage: str
    enabled: bool
    description: str = ""
    reference_url: str = ""


class Registry:
    def __init__(self):
        self._gates: Dict[str, Gate] = {}
        self._lock = threading.Lock()

    def register(self, gate_id: str, stage: str = ALPHA, description: str = "", reference_url: str = "") -> Gate:
        if stage not in (ALPHA, BETA, STABLE):
            raise ValueError(f"unknown stage: {stage}")
        with self._lock:
            if gate_id in self._gates:
                raise ValueError(f"feature gate already registered: {gate_id}")
            gate = Gate(gate_id, stage, enabled=(stage != ALPHA), description=description, reference_url=reference_url)
            self._gates[gate_id] = gate
            return gate

    def is_enabled(self, gate_id: str) -> bool:
        gate = self._gates.get(gate_id)
        return bool(gate and gate.enabled)

    def set(self, gate_id: str, enabled: bool) -> None:
        with self._lock:
            gate = self._gates.get(gate_id)
            if gate is None:
                raise ConfigurationError(f"no such feature gate: {gate_id}")
            if gate.stage == STABLE and not enabled:
                raise ConfigurationError(f"feature gate {gate_id} is stable and cannot be disabled")
            gate.enabled = enabled

    def apply(self, gates: Optional[str]) -> None:
        """Apply a comma-separated list like ``+a,-b,c``."""
        for item in (gates or "").split(","):
            item = item.strip()
            if not item:
                continue
            if item[0] == "-":
                self.set(item[1:], False)
            elif item[0] == "+":
                self.set(item[1:], True)
            else:
                self.set(item, True)

    def list(self) -> List[Gate]:
        return sorted(self._gates.values(), key=lambda g: g.id)


_GLOBAL_REGISTRY: Optional[Registry] = None


def get_global_registry() -> Registry:
    global _GLOBAL_REGISTRY
    if _GLOBAL_REGISTRY is None:
        reg = Registry()
        reg.register(
            ALLOW_FILE_DELETION,
            ALPHA,
            description="When enabled, allows usage of the `delete_after_read` setting.",
        )
        reg.apply(os.environ.get(ENV_VAR))
        _GLOBAL_REGISTRY = reg
    return _GLOBAL_REGISTRY
