from __future__ import annotations

import json
import os
import time
from typing import TYPE_CHECKING, Any, Callable

import httpx

from .db import Journal, utc_now
from .docker_ops import ContainerCLI, validate_project_name
from .errors import BestEffortFailure
from .models import PortBinding, ProjectNetworkIdentity, ProjectStatus, ServiceSpec, ServiceStatus
from .names import NameAllocator, target_port
from .process import ProcessRunner
from .settings import Settings

if TYPE_CHECKING:
    from .dns import DNSReconciler

COMPOSE_FILES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")

STOPPED_STATES = frozenset({"exited", "created", "dead"})


def classify_state(state: str, health: str = "") -> str:
    """Map a compose ``State``/``Health`` pair onto running, stopped or unhealthy."""
    state = (state or "").strip().lower()
    health = (health or "").strip().lower()
    if state == "running":
        return "unhealthy" if health == "unhealthy" else "running"
    if state in STOPPED_STATES:
        return "stopped"
    return "unhealthy"


def aggregate(service_statuses: list[str]) -> str:
    """Fold per-service states into one project state. Defined for every input."""
    total = len(service_statuses)
    running = sum(1 for s in service_statuses if s == "running")
    if total == 0:
        return "no-services"
    if running == total:
        return "running"
    if running == 0:
        return "stopped"
    return "partial"


def parse_compose_ps(output: str) -> list[dict[str, Any]]:
    """``docker compose ps --format json`` prints one object per line (newer) or one array (older)."""
    text = output.strip()
    if not text:
        return []
    if text.startswith("["):
        data = json.loads(text)
        return [r for r in data if isinstance(r, dict)]
    records = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            records.append(record)
    return records


def published_ports(record: dict[str, Any]) -> list[PortBinding]:
    seen: set[tuple[int, int]] = set()
    out: list[PortBinding] = []
    for pub in record.get("Publishers") or []:
        try:
            cport = int(pub.get("TargetPort") or 0)
            hport = int(pub.get("PublishedPort") or 0)
        except (TypeError, ValueError):
            continue
        # IPv4 and IPv6 bindings of one port show up twice.
        if hport == 0 or (cport, hport) in seen:
            continue
        seen.add((cport, hport))
        out.append(PortBinding(container_port=cport, host_port=hport))
    return out


def has_compose_file(project_dir: str) -> bool:
    return any(os.path.isfile(os.path.join(project_dir, f)) for f in COMPOSE_FILES)


def check_url(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """GET ``url``; anything that answers below 500 counts as reachable.

    Returns (reachable, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, verify=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code >= 500:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, f"HTTP {resp.status_code}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


class HealthAggregator:
    """Derives a project's status from the container runtime. Never reads its own cache."""

    def __init__(
        self,
        settings: Settings,
        docker: ContainerCLI,
        runner: ProcessRunner,
        names: NameAllocator,
        dns: DNSReconciler | None = None,
        journal: Journal | None = None,
        http_check: Callable[[str, float], tuple[bool, str, float | None]] = check_url,
    ) -> None:
        self.settings = settings
        self.docker = docker
        self.runner = runner
        self.names = names
        self.dns = dns
        self.journal = journal
        self.http_check = http_check

    def probe(
        self, project: str, project_dir: str | None = None, verify: bool = False, main: str | None = None
    ) -> ProjectStatus:
        validate_project_name(project)
        status = self._probe(project, project_dir, main)
        if verify:
            for svc in status.services:
                if svc.url:
                    svc.reachable, _, _ = self.http_check(svc.url, self.settings.http_timeout_s)
        if project_dir:
            status.git_branch, status.git_status = self.git_info(project_dir)
        if self.journal is not None:
            self.journal.save_status(status)
        return status

    def _probe(self, project: str, project_dir: str | None, main: str | None) -> ProjectStatus:
        if project_dir and not has_compose_file(project_dir):
            return ProjectStatus(project=project, overall="no-docker", probed_at=utc_now())

        res = self.docker.compose_ps(project, project_dir)
        if not res.launched and res.returncode == 127:
            return ProjectStatus(project=project, overall="no-docker", probed_at=utc_now())
        if not res.ok:
            self._log("WARN", f"Status query failed: {res.describe()}", project)
            return ProjectStatus(project=project, overall="docker-error", probed_at=utc_now())
        try:
            records = parse_compose_ps(res.stdout)
        except json.JSONDecodeError:
            self._log("WARN", "Status query returned unparseable output", project)
            return ProjectStatus(project=project, overall="docker-error", probed_at=utc_now())

        services: list[ServiceStatus] = []
        specs: list[ServiceSpec] = []
        for record in records:
            name = str(record.get("Service") or record.get("Name") or "")
            if not name or any(s.name == name for s in services):
                continue
            ports = published_ports(record)
            spec = ServiceSpec.declare(name, [p.container_port for p in ports])
            specs.append(spec)
            services.append(
                ServiceStatus(
                    name=name,
                    status=classify_state(str(record.get("State", "")), str(record.get("Health", ""))),
                    role=spec.role,
                    ports=ports,
                )
            )

        self._attach_urls(project, services, specs, main)
        return ProjectStatus(
            project=project,
            overall=aggregate([s.status for s in services]),
            services=services,
            urls=[s.url for s in services if s.url],
            probed_at=utc_now(),
        )

    def _attach_urls(
        self, project: str, services: list[ServiceStatus], specs: list[ServiceSpec], main: str | None
    ) -> None:
        web = [s for s in specs if s.web_facing and s.ports]
        if not web:
            return
        if main not in {s.name for s in web}:
            main = None
        identity = self.names.derive_for_specs(project, web, main=main)
        dns_ok = self._dns_reachable(project, identity)
        scheme = "https" if self.settings.has_wildcard_cert() else "http"

        by_name = {s.name: s for s in services}
        for spec in web:
            svc = by_name[spec.name]
            if svc.status != "running":
                continue
            cport = target_port(spec.ports)
            host_port = next(p.host_port for p in svc.ports if p.container_port == cport)
            if dns_ok and spec.name in identity.subdomains:
                svc.url = f"{scheme}://{identity.subdomains[spec.name]}"
            else:
                svc.url = f"http://localhost:{host_port}"

    def _dns_reachable(self, project: str, identity: ProjectNetworkIdentity) -> bool:
        if self.dns is None or not self.dns.is_configured(project):
            return False
        return self.dns.resolves(identity.domain, project=project)

    def git_info(self, project_dir: str) -> tuple[str | None, str | None]:
        """Branch and ``clean``/``N changes``; both None when git is unavailable."""
        branch = self.runner.run(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=project_dir, timeout=5)
        if not branch.ok:
            self._log("DEBUG", str(BestEffortFailure(f"git branch lookup failed: {branch.describe()}", subsystem="health")))
            return None, None
        porcelain = self.runner.run(["git", "status", "--porcelain"], cwd=project_dir, timeout=5)
        if not porcelain.ok:
            return branch.stdout.strip(), None
        changes = len([line for line in porcelain.stdout.splitlines() if line.strip()])
        return branch.stdout.strip(), "clean" if changes == 0 else f"{changes} changes"

    def _log(self, level: str, message: str, project: str | None = None) -> None:
        if self.journal is not None:
            self.journal.log_event(level, message, project=project)
