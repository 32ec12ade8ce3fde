import dataclasses

import pytest

from pnr.context import NetworkContext
from pnr.process import RunResult
from pnr.retry import RetryPolicy
from pnr.settings import Settings


class FakeRunner:
    """Records every command and answers from scripted rules.

    Unscripted ``docker ps/run/start/stop/rm`` calls are answered from a tiny in-memory model of
    which containers exist and run, so provisioning flows behave like they would against Docker.
    Everything else succeeds with empty output.
    """

    def __init__(self):
        self.calls = []
        self.rules = []
        self.running = set()
        self.existing = set()

    def on(self, *prefix, returncode=0, stdout="", stderr="", error=None):
        self.rules.append((tuple(prefix), RunResult((), returncode, stdout, stderr, error)))

    def run(self, args, timeout=None, cwd=None, input=None):
        argv = tuple(str(a) for a in args)
        self.calls.append(argv)
        for prefix, result in reversed(self.rules):
            if argv[: len(prefix)] == prefix:
                return dataclasses.replace(result, args=argv)
        return self._simulate(argv)

    def _simulate(self, argv):
        if argv[:2] == ("docker", "ps"):
            name = next((a[len("name=^/"):].rstrip("$") for a in argv if a.startswith("name=^/")), None)
            pool = self.existing if "-a" in argv else self.running
            return RunResult(argv, 0, f"{name}\n" if name in pool else "")
        if argv[:2] == ("docker", "run"):
            name = argv[argv.index("--name") + 1]
            self.running.add(name)
            self.existing.add(name)
        elif argv[:2] == ("docker", "start") and argv[2] in self.existing:
            self.running.add(argv[2])
        elif argv[:2] == ("docker", "stop"):
            self.running.discard(argv[2])
        elif argv[:3] == ("docker", "rm", "-f"):
            self.running.discard(argv[3])
            self.existing.discard(argv[3])
        return RunResult(argv, 0)

    def ran(self, *prefix):
        return [c for c in self.calls if c[: len(prefix)] == prefix]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        home=str(tmp_path / "home"),
        tld="test",
        port_range_start=3000,
        port_range_end=65535,
        dns_strategy="",
        dns_health_attempts=3,
        dns_health_interval_s=0,
        dnsmasq_dir=str(tmp_path / "dnsmasq.d"),
        resolver_dir=str(tmp_path / "resolver"),
        manage_resolver=True,
        proxy_shared_network=False,
    )


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def http_calls():
    return []


@pytest.fixture
def ctx(settings, runner, http_calls):
    def http_check(url, timeout_s):
        http_calls.append(url)
        return True, "HTTP 200", 1.0

    return NetworkContext.create(
        settings,
        runner=runner,
        port_probe=lambda port: True,
        docker_probe=lambda: True,
        retry=RetryPolicy(attempts=3, interval_s=0),
        http_check=http_check,
    )
