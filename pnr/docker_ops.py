from __future__ import annotations

import re
from typing import Sequence

import docker
from docker.errors import DockerException

from .errors import ExternalToolUnavailable
from .process import ProcessRunner, RunResult


PROJECT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9\-]{0,62}$")
SERVICE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9\-_]{0,62}$")
TLD_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")

DOCKER_REMEDIATION = "install Docker Desktop (or the docker engine) and start it"


def validate_project_name(name: str) -> None:
    if not PROJECT_NAME_RE.match(name or ""):
        raise ValueError(
            "Invalid project name. Use lowercase letters/numbers and hyphen, starting with a letter or digit (max 63 chars)."
        )


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name or ""):
        raise ValueError(
            "Invalid service name. Use lowercase letters/numbers, hyphen and underscore (max 63 chars)."
        )


def validate_tld(tld: str) -> None:
    # Keep it a single label so fragment and resolver file names stay flat.
    if not TLD_RE.match(tld or ""):
        raise ValueError("Invalid TLD. Use a single lowercase DNS label such as 'test'.")


def docker_available() -> bool:
    """True when a Docker daemon answers a ping."""
    try:
        c = docker.from_env()
        try:
            c.ping()
        finally:
            c.close()
        return True
    except DockerException:
        return False


class ContainerCLI:
    """The docker CLI operations the reconcilers need, run through a ``ProcessRunner``."""

    def __init__(self, runner: ProcessRunner, binary: str = "docker", timeout: float | None = None) -> None:
        self.runner = runner
        self.binary = binary
        self.timeout = timeout

    def run(self, *args: str, timeout: float | None = None, cwd: str | None = None) -> RunResult:
        return self.runner.run([self.binary, *args], timeout=timeout or self.timeout, cwd=cwd)

    def require(self, result: RunResult, subsystem: str = "docker") -> RunResult:
        """Raise when the runtime binary itself could not be started."""
        if not result.launched and result.returncode == 127:
            raise ExternalToolUnavailable(
                f"{self.binary} is not installed or not on PATH", subsystem=subsystem, remediation=DOCKER_REMEDIATION
            )
        return result

    def _names(self, *filters: str) -> list[str]:
        res = self.require(self.run("ps", *filters, "--format", "{{.Names}}"))
        if not res.ok:
            return []
        return [line.strip() for line in res.stdout.splitlines() if line.strip()]

    def is_running(self, name: str) -> bool:
        return name in self._names("--filter", f"name=^/{name}$")

    def exists(self, name: str) -> bool:
        return name in self._names("-a", "--filter", f"name=^/{name}$")

    def start(self, name: str) -> RunResult:
        return self.run("start", name)

    def stop(self, name: str) -> RunResult:
        return self.run("stop", name)

    def remove(self, name: str) -> RunResult:
        return self.run("rm", "-f", name)

    def exec(self, container: str, *cmd: str, timeout: float | None = None) -> RunResult:
        return self.run("exec", container, *cmd, timeout=timeout)

    def ensure_network(self, name: str, subnet: str | None = None) -> bool:
        """Create the bridge network unless it exists. Returns True when it was created."""
        if self.require(self.run("network", "inspect", name)).ok:
            return False
        args = ["network", "create", "--driver", "bridge"]
        if subnet:
            args += ["--subnet", subnet]
        res = self.run(*args, name)
        if not res.ok:
            raise ExternalToolUnavailable(
                f"could not create docker network '{name}': {res.describe()}",
                subsystem="docker",
                remediation=f"docker network rm {name} && retry, or pick another PNR_NETWORK_SUBNET",
            )
        return True

    def network_connect(self, network: str, container: str) -> RunResult:
        return self.run("network", "connect", network, container)

    def run_container(self, args: Sequence[str]) -> RunResult:
        return self.require(self.run("run", *args))

    def compose_ps(self, project: str, project_dir: str | None = None) -> RunResult:
        return self.run("compose", "-p", project, "ps", "--all", "--format", "json", cwd=project_dir)
