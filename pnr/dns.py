from __future__ import annotations

import os
import tempfile
from typing import TYPE_CHECKING, Callable, Iterable

from .db import Journal
from .docker_ops import ContainerCLI, docker_available, validate_project_name
from .errors import (
    BackendDegraded,
    BestEffortFailure,
    ExternalToolUnavailable,
    PermissionDenied,
    ReconcileError,
    ReconciliationTimeout,
)
from .files import atomic_write, read_text, remove_file
from .process import ProcessRunner
from .retry import RestartPolicy, RetryPolicy
from .runtime import BackendPhase, DNSStrategy, ReconcileReport, RuntimeState
from .settings import Settings

if TYPE_CHECKING:
    from .proxy import ProxyReconciler

HOST_DNSMASQ_DIRS = ("/opt/homebrew/etc/dnsmasq.d", "/usr/local/etc/dnsmasq.d", "/etc/dnsmasq.d")

HOST_RESTART_COMMANDS = (
    ("brew", "services", "restart", "dnsmasq"),
    ("sudo", "brew", "services", "restart", "dnsmasq"),
    ("sudo", "systemctl", "restart", "dnsmasq"),
    ("sudo", "killall", "-HUP", "dnsmasq"),
)

FLUSH_CACHE_SCRIPT = "dscacheutil -flushcache 2>/dev/null || true; killall -HUP mDNSResponder 2>/dev/null || true"

FRAGMENT_MARKER = "# Managed by pnr for project "

BASE_DNSMASQ_CONF = """# Managed by pnr
no-resolv
server=1.1.1.1
server=8.8.8.8
listen-address=0.0.0.0
conf-dir=/etc/dnsmasq.d/,*.conf
log-facility=-
"""


def render_fragment(project: str, domains: Iterable[str], ip: str) -> str:
    lines = [f"{FRAGMENT_MARKER}{project}"]
    lines += [f"address=/{d}/{ip}" for d in sorted(set(domains))]
    return "\n".join(lines) + "\n"


def parse_fragment(text: str) -> tuple[str | None, list[str]]:
    """Project name and domains of a fragment; the name is None for files pnr does not own."""
    project = None
    domains: list[str] = []
    for line in text.splitlines():
        line = line.strip()
        if line.startswith(FRAGMENT_MARKER):
            project = line[len(FRAGMENT_MARKER):].strip()
        elif line.startswith("address=/"):
            parts = line.split("/")
            if len(parts) >= 3 and parts[1]:
                domains.append(parts[1])
    return project, domains


class DNSReconciler:
    """Per-project dnsmasq ``address=`` fragments, served by a container or by the host's dnsmasq.

    The backend is chosen once per process (Docker reachable -> container) and cached in
    ``RuntimeState``. When the container backend fails during an install, that call falls back to
    the host backend and reports a warning.
    """

    def __init__(
        self,
        settings: Settings,
        docker: ContainerCLI,
        runner: ProcessRunner,
        runtime: RuntimeState,
        journal: Journal | None = None,
        proxy: ProxyReconciler | None = None,
        retry: RetryPolicy | None = None,
        restart: RestartPolicy | None = None,
        available: Callable[[], bool] = docker_available,
        host_dirs: Iterable[str] = HOST_DNSMASQ_DIRS,
    ) -> None:
        self.settings = settings
        self.docker = docker
        self.runner = runner
        self.runtime = runtime
        self.journal = journal
        self.proxy = proxy
        self.retry = retry or RetryPolicy(settings.dns_health_attempts, settings.dns_health_interval_s)
        self.restart = restart or RestartPolicy(settings.restart_after_reload_failures)
        self.available = available
        self.host_dirs = tuple(host_dirs)

    @property
    def container(self) -> str:
        return self.settings.dns_container

    # strategy

    def strategy(self) -> DNSStrategy:
        return self.runtime.strategy(self.available)

    def override(self, strategy: DNSStrategy, persist: bool = False) -> None:
        """Pin the backend for this process; with ``persist`` also for later runs."""
        self.runtime.override(strategy)
        if persist:
            atomic_write(self.settings.strategy_path, strategy.value + "\n")
        self._log("INFO", f"DNS strategy set to {strategy.value}")

    # paths

    def host_dir(self) -> str | None:
        if self.settings.dnsmasq_dir:
            return self.settings.dnsmasq_dir
        for d in self.host_dirs:
            if os.path.isdir(d):
                return d
        return None

    def fragment_path(self, project: str, strategy: DNSStrategy) -> str | None:
        if strategy is DNSStrategy.CONTAINER:
            return os.path.join(self.settings.dns_conf_dir, f"{project}.conf")
        d = self.host_dir()
        return os.path.join(d, f"{project}.conf") if d else None

    def resolver_path(self) -> str:
        return os.path.join(self.settings.resolver_dir, self.settings.tld)

    def expected_resolver(self, strategy: DNSStrategy) -> str:
        if strategy is DNSStrategy.CONTAINER:
            return f"nameserver 127.0.0.1\nport {self.settings.dns_host_port}\n"
        return "nameserver 127.0.0.1\n"

    # install / remove

    def install(self, project: str, domains: Iterable[str]) -> ReconcileReport:
        validate_project_name(project)
        content = render_fragment(project, domains, self.settings.dns_record_ip)
        strategy = self.strategy()
        if strategy is DNSStrategy.HOST:
            return self._install_host(project, content)

        try:
            return self._install_container(project, content)
        except PermissionDenied:
            raise
        except ReconcileError as e:
            warning = BackendDegraded(
                f"containerized DNS failed ({e.message}); fell back to host dnsmasq",
                subsystem="dns",
                remediation=e.remediation,
            )
            self._log("WARN", str(warning), project)
            self.runtime.set_phase(BackendPhase.DEGRADED)
            # The failed container is not serving this fragment; the host one replaces it.
            remove_file(self.fragment_path(project, DNSStrategy.CONTAINER))
            report = self._install_host(project, content)
            report.warnings.insert(0, warning)
            return report

    def _install_container(self, project: str, content: str) -> ReconcileReport:
        path = self.fragment_path(project, DNSStrategy.CONTAINER)
        report = ReconcileReport(project=project, backend=DNSStrategy.CONTAINER.value, path=path)

        if read_text(path) != content:
            atomic_write(path, content)
            self._log("INFO", f"Wrote DNS fragment {path}", project)
        # A freshly started container reads conf.d on boot.
        if not self.ensure_container():
            self._reload_container(report)

        self.ensure_resolver(DNSStrategy.CONTAINER)
        self.flush_cache()
        if report.clean:
            self.runtime.set_phase(BackendPhase.RUNNING)
        return report

    def _install_host(self, project: str, content: str) -> ReconcileReport:
        path = self.fragment_path(project, DNSStrategy.HOST)
        if path is None:
            raise ExternalToolUnavailable(
                "dnsmasq not found (no dnsmasq.d config directory)",
                subsystem="dns",
                remediation="brew install dnsmasq",
            )
        report = ReconcileReport(project=project, backend=DNSStrategy.HOST.value, path=path)
        if read_text(path) != content:
            try:
                atomic_write(path, content)
            except PermissionError as e:
                raise PermissionDenied(
                    f"cannot write {path}: {e.strerror}",
                    subsystem="dns",
                    remediation=f"sudo chown $(whoami) {os.path.dirname(path)}",
                ) from e
            self._log("INFO", f"Wrote DNS fragment {path}", project)
        self._restart_host(report)
        self.ensure_resolver(DNSStrategy.HOST)
        self.flush_cache()
        return report

    def remove(self, project: str) -> ReconcileReport:
        """Delete the project's fragment from both backends and reconcile the active one."""
        validate_project_name(project)
        strategy = self.strategy()
        report = ReconcileReport(project=project, backend=strategy.value)
        removed: dict[DNSStrategy, bool] = {}
        for s in (DNSStrategy.CONTAINER, DNSStrategy.HOST):
            path = self.fragment_path(project, s)
            removed[s] = bool(path) and remove_file(path)
            if removed[s]:
                report.path = path
                self._log("INFO", f"Removed DNS fragment {path}", project)

        if removed[DNSStrategy.CONTAINER] and strategy is DNSStrategy.CONTAINER:
            if self.docker.is_running(self.container):
                self._reload_container(report)
        if removed[DNSStrategy.HOST]:
            self._restart_host(report)
        if any(removed.values()):
            self.flush_cache()
        return report

    # container backend

    def ensure_container(self) -> bool:
        """Start the DNS container unless it is running. Returns True when started now."""
        if self.docker.is_running(self.container):
            return False

        s = self.settings
        os.makedirs(s.dns_conf_dir, exist_ok=True)
        conf = os.path.join(s.dns_dir, "dnsmasq.conf")
        if read_text(conf) != BASE_DNSMASQ_CONF:
            atomic_write(conf, BASE_DNSMASQ_CONF)

        if self.docker.ensure_network(s.network, s.network_subnet):
            self._log("INFO", f"Created docker network '{s.network}'")
        if self.docker.exists(self.container):
            self.docker.remove(self.container)

        res = self.docker.run_container(
            [
                "-d",
                "--name", self.container,
                "--network", s.network,
                "--ip", s.dns_ip,
                "-p", f"{s.dns_host_port}:53/udp",
                "-p", f"{s.dns_host_port}:53/tcp",
                "-v", f"{conf}:/etc/dnsmasq.conf:ro",
                "-v", f"{s.dns_conf_dir}:/etc/dnsmasq.d:ro",
                "--restart", "unless-stopped",
                "--cap-add", "NET_ADMIN",
                s.dns_image,
                "--conf-file=/etc/dnsmasq.conf",
            ]
        )
        if not res.ok:
            raise ExternalToolUnavailable(
                f"could not start DNS container {self.container}: {res.describe()}",
                subsystem="dns",
                remediation=f"free host port {s.dns_host_port} (lsof -i :{s.dns_host_port}) and retry",
            )
        self._log("INFO", f"Started DNS container {self.container} from {s.dns_image}")
        self.wait_for_container()
        self.runtime.set_phase(BackendPhase.RUNNING)
        return True

    def container_healthy(self) -> bool:
        if not self.docker.is_running(self.container):
            return False
        return self.docker.exec(self.container, "nslookup", "localhost", "127.0.0.1", timeout=5).ok

    def wait_for_container(self) -> None:
        if self.retry.wait_for(self.container_healthy):
            return
        raise ReconciliationTimeout(
            f"DNS container {self.container} not healthy after {self.retry.attempts} attempts",
            subsystem="dns",
            remediation=f"docker logs {self.container}",
        )

    def restart_container(self) -> None:
        self.docker.stop(self.container)
        self.docker.remove(self.container)
        self.ensure_container()

    def _graceful_reload(self) -> bool:
        if not self.docker.exec(self.container, "pkill", "-HUP", "dnsmasq").ok:
            return False
        if self.proxy is not None and self.docker.is_running(self.proxy.container):
            return self.proxy.reload()
        return True

    def _reload_container(self, report: ReconcileReport) -> None:
        ok = self._graceful_reload()
        failures = self.runtime.mark_reload("dns", ok)
        if ok:
            self._log("INFO", "Reloaded DNS container", report.project)
            return

        if not self.restart.should_restart(failures):
            warning = BackendDegraded(
                f"graceful DNS reload failed ({failures} in a row); restart deferred",
                subsystem="dns",
                remediation=f"docker restart {self.container}",
            )
            self.runtime.set_phase(BackendPhase.DEGRADED)
        else:
            self.restart_container()
            self.runtime.mark_reload("dns", True)
            warning = BackendDegraded("graceful DNS reload failed; container restarted", subsystem="dns")
        report.warnings.append(warning)
        self._log("WARN", str(warning), report.project)

    # host backend

    def _restart_host(self, report: ReconcileReport) -> None:
        for cmd in HOST_RESTART_COMMANDS:
            if self.runner.run(cmd).ok:
                self._log("INFO", f"Restarted host dnsmasq via `{' '.join(cmd)}`", report.project)
                return
        warning = BackendDegraded(
            "could not restart host dnsmasq; new names apply after its next restart",
            subsystem="dns",
            remediation="sudo brew services restart dnsmasq",
        )
        report.warnings.append(warning)
        self._log("WARN", str(warning), report.project)

    # resolver

    def ensure_resolver(self, strategy: DNSStrategy) -> bool:
        """Install the per-TLD resolver stanza. Returns True when the file was (re)written.

        Content equality, not existence, decides whether anything happens, so re-runs do not prompt
        for privileges again.
        """
        if not self.settings.manage_resolver:
            return False
        path = self.resolver_path()
        expected = self.expected_resolver(strategy)
        if read_text(path) == expected:
            return False

        try:
            atomic_write(path, expected)
        except OSError:
            self._sudo_install(path, expected)
        self._log("INFO", f"Installed resolver {path}")
        return True

    def _sudo_install(self, path: str, content: str) -> None:
        directory = os.path.dirname(path)
        escaped = content.replace("\n", "\\n")
        remediation = f"sudo mkdir -p {directory} && printf '{escaped}' | sudo tee {path}"

        os.makedirs(self.settings.home, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".resolver-", dir=self.settings.home)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            for cmd in (
                ("sudo", "mkdir", "-p", directory),
                ("sudo", "mv", tmp, path),
                ("sudo", "chmod", "644", path),
            ):
                res = self.runner.run(cmd)
                if not res.ok:
                    raise PermissionDenied(
                        f"cannot install resolver {path}: {res.describe()}",
                        subsystem="resolver",
                        remediation=remediation,
                    )
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    def flush_cache(self) -> None:
        res = self.runner.run(("/bin/sh", "-c", FLUSH_CACHE_SCRIPT), timeout=10)
        if not res.ok:
            self._log("DEBUG", str(BestEffortFailure(f"resolver cache flush failed: {res.describe()}", subsystem="dns")))

    # inspection

    def is_configured(self, project: str) -> bool:
        for s in (DNSStrategy.CONTAINER, DNSStrategy.HOST):
            path = self.fragment_path(project, s)
            if path and os.path.isfile(path):
                return True
        return False

    def serving_backend(self, project: str | None = None) -> DNSStrategy:
        """Backend answering for ``project``: a host fragment alone means host dnsmasq after a fallback."""
        strategy = self.strategy()
        if strategy is DNSStrategy.CONTAINER and project is not None:
            host = self.fragment_path(project, DNSStrategy.HOST)
            if host and os.path.isfile(host) and not os.path.isfile(self.fragment_path(project, DNSStrategy.CONTAINER)):
                return DNSStrategy.HOST
        return strategy

    def resolves(self, domain: str, project: str | None = None) -> bool:
        args = ["nslookup"]
        if self.serving_backend(project) is DNSStrategy.CONTAINER:
            args.append(f"-port={self.settings.dns_host_port}")
        args += [domain, "127.0.0.1"]
        res = self.runner.run(args, timeout=self.settings.resolve_timeout_s)
        return res.ok and "NXDOMAIN" not in res.stdout and "can't find" not in res.stdout

    def list_domains(self) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        dirs = [self.settings.dns_conf_dir]
        host = self.host_dir()
        if host:
            dirs.append(host)
        for d in dirs:
            try:
                names = sorted(os.listdir(d))
            except OSError:
                continue
            for n in names:
                if not n.endswith(".conf"):
                    continue
                text = read_text(os.path.join(d, n))
                if not text:
                    continue
                project, domains = parse_fragment(text)
                if project is not None:
                    out[project] = sorted(set(out.get(project, [])) | set(domains))
        return out

    def status(self) -> dict:
        strategy = self.strategy()
        running = strategy is DNSStrategy.CONTAINER and self.docker.is_running(self.container)
        return {
            "strategy": strategy.value,
            "phase": self.runtime.phase.value,
            "container": self.container if strategy is DNSStrategy.CONTAINER else None,
            "container_running": running,
            "container_healthy": running and self.container_healthy(),
            "host_dir": self.host_dir(),
            "resolver": self.resolver_path(),
            "resolver_configured": read_text(self.resolver_path()) == self.expected_resolver(strategy),
            "projects": self.list_domains(),
        }

    def stop(self) -> None:
        self.docker.stop(self.container)
        self.docker.remove(self.container)
        self.runtime.set_phase(BackendPhase.SELECTED)
        self._log("INFO", f"Stopped DNS container {self.container}")

    def _log(self, level: str, message: str, project: str | None = None) -> None:
        if self.journal is not None:
            self.journal.log_event(level, message, project=project)
