from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .db import Journal
from .dns import DNSReconciler
from .docker_ops import ContainerCLI, docker_available
from .files import read_text
from .health import HealthAggregator, check_url
from .ledger import PortLedger, port_is_bindable
from .names import NameAllocator
from .process import ProcessRunner, SubprocessRunner
from .proxy import ProxyReconciler
from .retry import RestartPolicy, RetryPolicy
from .runtime import DNSStrategy, RuntimeState
from .settings import Settings, settings as default_settings


@dataclass
class NetworkContext:
    """Everything one process run shares, built once and passed by reference."""

    settings: Settings
    runner: ProcessRunner
    runtime: RuntimeState
    journal: Journal
    docker: ContainerCLI
    ledger: PortLedger
    names: NameAllocator
    proxy: ProxyReconciler
    dns: DNSReconciler
    health: HealthAggregator

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        runner: ProcessRunner | None = None,
        port_probe: Callable[[int], bool] = port_is_bindable,
        docker_probe: Callable[[], bool] = docker_available,
        retry: RetryPolicy | None = None,
        http_check: Callable = check_url,
        host_dirs: tuple[str, ...] | None = None,
    ) -> "NetworkContext":
        s = settings or default_settings
        runner = runner or SubprocessRunner(default_timeout=s.command_timeout_s)
        runtime = RuntimeState()
        journal = Journal(s.journal_path)
        docker = ContainerCLI(runner, timeout=s.command_timeout_s)
        ledger = PortLedger(s.ledger_path, s.port_range_start, s.port_range_end, probe=port_probe, journal=journal)
        names = NameAllocator(s.tld, upstream_host=s.proxy_upstream_host, shared_network=s.proxy_shared_network)
        proxy = ProxyReconciler(s, docker, journal=journal, runtime=runtime)
        dns_kwargs = {} if host_dirs is None else {"host_dirs": host_dirs}
        dns = DNSReconciler(
            s,
            docker,
            runner,
            runtime,
            journal=journal,
            proxy=proxy,
            retry=retry,
            restart=RestartPolicy(s.restart_after_reload_failures),
            available=docker_probe,
            **dns_kwargs,
        )
        pinned = (s.dns_strategy or read_text(s.strategy_path) or "").strip()
        if pinned:
            runtime.override(DNSStrategy(pinned))
        health = HealthAggregator(s, docker, runner, names, dns=dns, journal=journal, http_check=http_check)
        return cls(
            settings=s,
            runner=runner,
            runtime=runtime,
            journal=journal,
            docker=docker,
            ledger=ledger,
            names=names,
            proxy=proxy,
            dns=dns,
            health=health,
        )
