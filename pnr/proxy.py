from __future__ import annotations

import os

from jinja2 import Environment, FileSystemLoader

from .db import Journal
from .docker_ops import ContainerCLI, validate_project_name
from .errors import BackendDegraded, ExternalToolUnavailable
from .files import atomic_write, read_text, remove_file
from .models import ServiceMapping
from .runtime import ReconcileReport, RuntimeState
from .settings import Settings

TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")

CONTAINER_CERTS_DIR = "/etc/nginx/certs"

_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)


class ProxyReconciler:
    """Keeps one nginx route file per project in sync with allocated ports.

    Route files live in ``settings.routes_dir`` (mounted into the proxy container as
    ``sites-enabled``), named ``<project>.conf`` so removal is delete-and-reload.
    """

    def __init__(
        self,
        settings: Settings,
        docker: ContainerCLI,
        journal: Journal | None = None,
        runtime: RuntimeState | None = None,
    ) -> None:
        self.settings = settings
        self.docker = docker
        self.journal = journal
        self.runtime = runtime

    @property
    def container(self) -> str:
        return self.settings.proxy_container

    def route_path(self, project: str) -> str:
        return os.path.join(self.settings.routes_dir, f"{project}.conf")

    def render(self, project: str, mappings: list[ServiceMapping]) -> str:
        tls = self.settings.has_wildcard_cert()
        return _env.get_template("project.conf.j2").render(
            project=project,
            mappings=mappings,
            tls=tls,
            cert_path=f"{CONTAINER_CERTS_DIR}/{os.path.basename(self.settings.wildcard_cert)}",
            key_path=f"{CONTAINER_CERTS_DIR}/{os.path.basename(self.settings.wildcard_key)}",
        )

    def install(self, project: str, mappings: list[ServiceMapping]) -> ReconcileReport:
        """Write the project's route file, then make sure the proxy serves it.

        The route file stays on disk even when the reload fails; the next successful reload
        picks it up.
        """
        validate_project_name(project)
        if not mappings:
            report = self.remove(project)
            self._log("INFO", "No web-facing services; proxy route not installed", project)
            return report

        path = self.route_path(project)
        report = ReconcileReport(project=project, backend="proxy", path=path)
        content = self.render(project, mappings)
        if read_text(path) != content:
            atomic_write(path, content)
            self._log("INFO", f"Wrote proxy route {path} ({len(mappings)} server blocks)", project)

        # A freshly started container reads the route directory on boot.
        if not self.ensure_running():
            self._reload_or_warn(report)

        if self.settings.proxy_shared_network:
            self._attach_project_network(project, report)
        return report

    def remove(self, project: str) -> ReconcileReport:
        validate_project_name(project)
        path = self.route_path(project)
        report = ReconcileReport(project=project, backend="proxy", path=path)
        if not remove_file(path):
            return report
        self._log("INFO", f"Removed proxy route {path}", project)
        if self.docker.is_running(self.container):
            self._reload_or_warn(report)
        return report

    def ensure_running(self) -> bool:
        """Provision network, base config and container if needed. Returns True when started now."""
        if self.docker.is_running(self.container):
            return False

        os.makedirs(self.settings.routes_dir, exist_ok=True)
        os.makedirs(self.settings.certs_dir, exist_ok=True)
        conf = os.path.join(self.settings.proxy_dir, "nginx.conf")
        if not os.path.exists(conf):
            atomic_write(conf, _env.get_template("nginx.conf.j2").render(client_max_body_size="100m"))

        if self.docker.ensure_network(self.settings.network, self.settings.network_subnet):
            self._log("INFO", f"Created docker network '{self.settings.network}'")

        if self.docker.exists(self.container):
            if self.docker.start(self.container).ok:
                self._log("INFO", f"Started existing proxy container {self.container}")
                return True
            self.docker.remove(self.container)

        res = self.docker.run_container(self._run_args(conf))
        if not res.ok:
            raise ExternalToolUnavailable(
                f"could not start proxy container {self.container}: {res.describe()}",
                subsystem="proxy",
                remediation="free host ports 80 and 443 (sudo lsof -iTCP:80 -sTCP:LISTEN) and retry",
            )
        self._log("INFO", f"Started proxy container {self.container} from {self.settings.proxy_image}")
        return True

    def _run_args(self, conf: str) -> list[str]:
        s = self.settings
        return [
            "-d",
            "--name", self.container,
            "--network", s.network,
            "--ip", s.proxy_ip,
            "-p", "80:80",
            "-p", "443:443",
            "--add-host", "host.docker.internal:host-gateway",
            "-v", f"{conf}:/etc/nginx/nginx.conf:ro",
            "-v", f"{s.routes_dir}:/etc/nginx/sites-enabled:ro",
            "-v", f"{s.certs_dir}:{CONTAINER_CERTS_DIR}:ro",
            "--restart", "unless-stopped",
            s.proxy_image,
        ]

    def reload(self) -> bool:
        ok = self.docker.exec(self.container, "nginx", "-s", "reload").ok
        if self.runtime is not None:
            self.runtime.mark_reload("proxy", ok)
        return ok

    def _reload_or_warn(self, report: ReconcileReport) -> None:
        if self.reload():
            self._log("INFO", "Reloaded proxy", report.project)
            return
        warning = BackendDegraded(
            "proxy reload failed; route file kept for the next successful reload",
            subsystem="proxy",
            remediation=f"docker exec {self.container} nginx -t",
        )
        report.warnings.append(warning)
        self._log("WARN", str(warning), report.project)

    def _attach_project_network(self, project: str, report: ReconcileReport) -> None:
        network = f"{project}-network"
        res = self.docker.network_connect(network, self.container)
        if res.ok or "already exists" in res.stderr:
            return
        warning = BackendDegraded(
            f"could not attach proxy to {network}: {res.describe()}",
            subsystem="proxy",
            remediation=f"docker network connect {network} {self.container}",
        )
        report.warnings.append(warning)
        self._log("WARN", str(warning), project)

    def installed_projects(self) -> list[str]:
        try:
            names = os.listdir(self.settings.routes_dir)
        except FileNotFoundError:
            return []
        return sorted(n[: -len(".conf")] for n in names if n.endswith(".conf"))

    def status(self) -> dict:
        running = self.docker.is_running(self.container)
        config_ok = running and self.docker.exec(self.container, "nginx", "-t").ok
        return {
            "container": self.container,
            "running": running,
            "config_ok": config_ok,
            "tls": self.settings.has_wildcard_cert(),
            "projects": self.installed_projects(),
        }

    def stop(self) -> None:
        self.docker.stop(self.container)
        self.docker.remove(self.container)
        self._log("INFO", f"Stopped proxy container {self.container}")

    def _log(self, level: str, message: str, project: str | None = None) -> None:
        if self.journal is not None:
            self.journal.log_event(level, message, project=project)
