from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .context import NetworkContext
from .errors import ReconcileError
from .models import ProjectNetworkIdentity, ProjectStatus, ServiceMapping
from .names import declare_services
from .runtime import ReconcileReport


@dataclass
class ProvisionResult:
    project: str
    ports: dict[str, dict[int, int]]
    identity: ProjectNetworkIdentity
    mappings: list[ServiceMapping]
    proxy: ReconcileReport
    dns: ReconcileReport
    status: ProjectStatus | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "ports": {svc: {str(c): h for c, h in ports.items()} for svc, ports in self.ports.items()},
            "domains": self.identity.domains(),
            "main_service": self.identity.main_service,
            "routes": [m.model_dump() for m in self.mappings],
            "dns_backend": self.dns.backend,
            "status": self.status.model_dump() if self.status else None,
            "warnings": self.warnings,
        }


class Reconciler:
    """Drives ports, proxy routes and DNS records of a project to agree with each other.

    Steps run in a fixed order and stop at the first fatal error; whatever was already written
    stays on disk so a re-run converges.
    """

    def __init__(self, ctx: NetworkContext):
        self.ctx = ctx

    def bring_online(
        self,
        project: str,
        services: Mapping[str, Iterable[int]],
        main: str | None = None,
        project_dir: str | None = None,
        verify: bool = False,
    ) -> ProvisionResult:
        ctx = self.ctx
        specs = declare_services(services)
        try:
            ports = ctx.ledger.allocate(project, {s.name: s.ports for s in specs})
            identity = ctx.names.derive_for_specs(project, specs, main=main)
            mappings = ctx.names.mappings(identity, specs, ports)
            proxy_report = ctx.proxy.install(project, mappings)
            if identity.subdomains:
                dns_report = ctx.dns.install(project, identity.domains())
            else:
                dns_report = ctx.dns.remove(project)
            status = ctx.health.probe(project, project_dir, verify=verify, main=identity.main_service)
        except ReconcileError as e:
            ctx.journal.log_event("ERROR", f"Bring-online failed: {e}", project=project)
            raise

        warnings = proxy_report.warning_messages() + dns_report.warning_messages()
        ctx.journal.log_event(
            "INFO",
            f"Project online: {', '.join(identity.domains()) or 'no web-facing services'} ({status.overall})",
            project=project,
        )
        return ProvisionResult(
            project=project,
            ports=ports,
            identity=identity,
            mappings=mappings,
            proxy=proxy_report,
            dns=dns_report,
            status=status,
            warnings=warnings,
        )

    def tear_down(self, project: str) -> list[str]:
        """DNS first, then proxy, then the ledger. Returns warnings."""
        ctx = self.ctx
        try:
            dns_report = ctx.dns.remove(project)
            proxy_report = ctx.proxy.remove(project)
        except ReconcileError as e:
            ctx.journal.log_event("ERROR", f"Tear-down failed: {e}", project=project)
            raise
        ctx.ledger.release(project)
        ctx.journal.forget_status(project)
        ctx.journal.log_event("INFO", "Project torn down", project=project)
        return dns_report.warning_messages() + proxy_report.warning_messages()

    def reconcile_all(self) -> dict[str, list[str]]:
        """Re-install routes and records for every project in the ledger.

        Used after a reboot or when the proxy/DNS containers were lost. A failing project is
        reported in the result and the others still run.
        """
        ctx = self.ctx
        results: dict[str, list[str]] = {}
        for project in sorted(ctx.ledger.all()):
            allocated = ctx.ledger.mapping(project)
            specs = declare_services({svc: sorted(ports) for svc, ports in allocated.items()})
            try:
                identity = ctx.names.derive_for_specs(project, specs)
                mappings = ctx.names.mappings(identity, specs, allocated)
                proxy_report = ctx.proxy.install(project, mappings)
                if identity.subdomains:
                    dns_report = ctx.dns.install(project, identity.domains())
                else:
                    dns_report = ctx.dns.remove(project)
            except ReconcileError as e:
                ctx.journal.log_event("ERROR", f"Reconcile failed: {e}", project=project)
                results[project] = [str(e)]
                continue
            results[project] = proxy_report.warning_messages() + dns_report.warning_messages()
        return results

    def cleanup_orphans(self, known_projects: Iterable[str]) -> list[str]:
        """Tear down every ledger project not in ``known_projects``."""
        known = set(known_projects)
        orphans = sorted(p for p in self.ctx.ledger.all() if p not in known)
        for project in orphans:
            self.ctx.dns.remove(project)
            self.ctx.proxy.remove(project)
            self.ctx.journal.forget_status(project)
        self.ctx.ledger.cleanup_orphans(known)
        return orphans
