from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Callable

from .db import utc_now
from .errors import ReconcileError


class DNSStrategy(str, Enum):
    CONTAINER = "container"
    HOST = "host"


class BackendPhase(str, Enum):
    UNPROBED = "unprobed"
    SELECTED = "selected"
    RUNNING = "running"
    DEGRADED = "degraded"


@dataclass
class ReconcileReport:
    """Outcome of one install/remove against an external backend.

    Fatal problems are raised; anything listed in ``warnings`` was tolerated.
    """

    project: str
    backend: str
    path: str | None = None
    warnings: list[ReconcileError] = field(default_factory=list)
    finished_at: str = field(default_factory=utc_now)

    @property
    def clean(self) -> bool:
        return not self.warnings

    def warning_messages(self) -> list[str]:
        return [str(w) for w in self.warnings]


class RuntimeState:
    """In-process shared state for one tool invocation.

    Holds the lazily probed DNS strategy and consecutive reload failure counts per backend.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self._strategy: DNSStrategy | None = None
        self._phase = BackendPhase.UNPROBED
        self.reload_failures: dict[str, int] = {}  # backend -> consecutive failures

    def strategy(self, probe: Callable[[], bool]) -> DNSStrategy:
        """Return the cached strategy, probing the container runtime on first use."""
        with self.lock:
            if self._strategy is None:
                self._strategy = DNSStrategy.CONTAINER if probe() else DNSStrategy.HOST
                self._phase = BackendPhase.SELECTED
            return self._strategy

    def override(self, strategy: DNSStrategy) -> None:
        with self.lock:
            self._strategy = strategy
            self._phase = BackendPhase.SELECTED

    @property
    def phase(self) -> BackendPhase:
        with self.lock:
            return self._phase

    def set_phase(self, phase: BackendPhase) -> None:
        with self.lock:
            self._phase = phase

    def mark_reload(self, backend: str, ok: bool) -> int:
        """Record a graceful reload outcome; returns the consecutive failure count."""
        with self.lock:
            if ok:
                self.reload_failures[backend] = 0
                return 0
            self.reload_failures[backend] = self.reload_failures.get(backend, 0) + 1
            return self.reload_failures[backend]
