from __future__ import annotations

import socket
from threading import Lock
from typing import Callable, Iterable, Mapping

from pydantic import ValidationError

from .db import Journal
from .docker_ops import validate_project_name, validate_service_name
from .errors import AllocationExhausted, ReconcileError
from .files import atomic_write, read_text
from .models import LedgerFile, ProjectAllocation

WEB_PORT = 80
# Tried in order when a service asks for port 80 and the container port itself is unusable.
WEB_PORT_ALTERNATES = (8000, 8001, 8002, 8003, 8004, 8005, 8080, 8081, 8082)


def port_is_bindable(port: int) -> bool:
    """Bind and release ``port`` to catch listeners the ledger does not know about."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind(("", port))
        except OSError:
            return False
    return True


def port_key(service: str, container_port: int) -> str:
    return f"{service}:{int(container_port)}"


def split_port_key(key: str) -> tuple[str, int]:
    service, _, port = key.rpartition(":")
    return service, int(port)


class PortLedger:
    """Persistent project -> (service, container port) -> host port registry.

    The JSON file is the only source of truth: every call loads it, mutates a copy and saves it
    under one lock. Nothing is cached between calls.
    """

    def __init__(
        self,
        path: str,
        range_start: int = 3000,
        range_end: int = 65535,
        probe: Callable[[int], bool] = port_is_bindable,
        journal: Journal | None = None,
    ) -> None:
        if not 1024 <= range_start <= range_end <= 65535:
            raise ValueError("Port range must satisfy 1024 <= start <= end <= 65535.")
        self.path = path
        self.range_start = range_start
        self.range_end = range_end
        self.probe = probe
        self.journal = journal
        self._lock = Lock()

    # persistence

    def _load(self) -> LedgerFile:
        text = read_text(self.path)
        if text is None or not text.strip():
            return LedgerFile(next_port=self.range_start)
        try:
            ledger = LedgerFile.model_validate_json(text)
        except ValidationError as e:
            raise ReconcileError(
                f"Port ledger {self.path} is unreadable: {e.error_count()} validation error(s)",
                subsystem="ports",
                remediation=f"mv {self.path} {self.path}.bak",
            ) from e
        if not self.range_start <= ledger.next_port <= self.range_end:
            ledger.next_port = self.range_start
        return ledger

    def _save(self, ledger: LedgerFile) -> None:
        atomic_write(self.path, ledger.model_dump_json(indent=2) + "\n")

    # queries

    def get(self, project: str) -> ProjectAllocation | None:
        with self._lock:
            return self._load().allocations.get(project)

    def all(self) -> dict[str, ProjectAllocation]:
        with self._lock:
            return dict(self._load().allocations)

    def mapping(self, project: str) -> dict[str, dict[int, int]]:
        """Stored allocation of ``project`` as service -> {container port: host port}."""
        alloc = self.get(project)
        if alloc is None:
            return {}
        out: dict[str, dict[int, int]] = {}
        for key, host_port in alloc.ports.items():
            service, container_port = split_port_key(key)
            out.setdefault(service, {})[container_port] = host_port
        return out

    # mutations

    def allocate(self, project: str, service_ports: Mapping[str, Iterable[int]]) -> dict[str, dict[int, int]]:
        """Assign a unique host port to every requested (service, container port).

        An existing allocation is returned as is when it already covers the request. A request
        with new keys replaces the entry wholesale: keys still requested keep their host ports,
        new keys get fresh ones, keys no longer requested are dropped. Nothing is saved if any
        port cannot be allocated.
        """
        validate_project_name(project)
        requested: list[tuple[str, int]] = []
        for service, ports in service_ports.items():
            validate_service_name(service)
            for p in ports:
                p = int(p)
                if not 1 <= p <= 65535:
                    raise ValueError(f"Invalid container port {p} for service '{service}'.")
                if (service, p) not in requested:
                    requested.append((service, p))

        with self._lock:
            ledger = self._load()
            existing = ledger.allocations.get(project)
            keys = [port_key(s, p) for s, p in requested]

            if existing is not None and all(k in existing.ports for k in keys):
                return self._as_mapping(existing, requested)

            kept: dict[str, int] = {}
            if existing is not None:
                kept = {k: v for k, v in existing.ports.items() if k in keys}

            claimed = {
                host_port
                for name, alloc in ledger.allocations.items()
                if name != project
                for host_port in alloc.ports.values()
            }
            claimed.update(kept.values())

            allocation = ProjectAllocation(project_name=project, ports=dict(kept), reserved=True)
            for service, container_port in requested:
                key = port_key(service, container_port)
                if key in allocation.ports:
                    continue
                try:
                    host_port = self._choose(ledger, claimed, container_port)
                except AllocationExhausted as e:
                    self._log("ERROR", f"Port allocation failed for {key}: {e.message}", project, service)
                    raise
                allocation.ports[key] = host_port
                claimed.add(host_port)

            ledger.allocations[project] = allocation
            self._save(ledger)

        action = "Re-allocated" if existing is not None else "Allocated"
        summary = ", ".join(f"{k}->{v}" for k, v in sorted(allocation.ports.items()))
        self._log("INFO", f"{action} ports: {summary}", project)
        return self._as_mapping(allocation, requested)

    def release(self, project: str) -> bool:
        """Forget ``project``. The OS is not contacted; the bind probe re-checks ports on reuse."""
        with self._lock:
            ledger = self._load()
            if project not in ledger.allocations:
                return False
            del ledger.allocations[project]
            self._save(ledger)
        self._log("INFO", "Released port allocation", project)
        return True

    def cleanup_orphans(self, known_projects: Iterable[str]) -> list[str]:
        """Drop allocations of projects that are no longer known. Returns the removed names."""
        known = set(known_projects)
        with self._lock:
            ledger = self._load()
            orphans = sorted(p for p in ledger.allocations if p not in known)
            if not orphans:
                return []
            for p in orphans:
                del ledger.allocations[p]
            self._save(ledger)
        for p in orphans:
            self._log("INFO", "Released orphaned port allocation", p)
        return orphans

    # internals

    def _choose(self, ledger: LedgerFile, claimed: set[int], container_port: int) -> int:
        if self.range_start <= container_port <= self.range_end and self._free(container_port, claimed):
            return container_port

        if container_port == WEB_PORT:
            for candidate in WEB_PORT_ALTERNATES:
                if self._free(candidate, claimed):
                    return candidate

        span = self.range_end - self.range_start + 1
        cursor = ledger.next_port
        for _ in range(span):
            port = cursor
            cursor = port + 1 if port < self.range_end else self.range_start
            ledger.next_port = cursor
            if self._free(port, claimed):
                return port

        raise AllocationExhausted(
            f"No free host port in range {self.range_start}-{self.range_end}",
            remediation="release unused projects (pnr down <project>) or widen PNR_PORT_RANGE_START/END",
        )

    def _free(self, port: int, claimed: set[int]) -> bool:
        return port not in claimed and self.probe(port)

    @staticmethod
    def _as_mapping(alloc: ProjectAllocation, requested: list[tuple[str, int]]) -> dict[str, dict[int, int]]:
        out: dict[str, dict[int, int]] = {}
        for service, container_port in requested:
            host_port = alloc.ports.get(port_key(service, container_port))
            if host_port is not None:
                out.setdefault(service, {})[container_port] = host_port
        return out

    def _log(self, level: str, message: str, project: str | None = None, service: str | None = None) -> None:
        if self.journal is not None:
            self.journal.log_event(level, message, project=project, service=service)
