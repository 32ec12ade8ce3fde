from __future__ import annotations

import re
from typing import Iterable, Mapping

from .docker_ops import validate_project_name, validate_service_name, validate_tld
from .models import WEB_PORTS, ProjectNetworkIdentity, ServiceMapping, ServiceRole, ServiceSpec

WEB_TOKENS = ("web", "webserver", "nginx", "apache", "app", "frontend", "ui")
# Order matters: the first service with a name word matching one of these becomes the main service.
MAIN_TOKENS = ("webserver", "nginx", "apache", "web", "app", "frontend")
DATABASE_TOKENS = ("db", "database", "mysql", "mariadb", "postgres", "pgsql", "redis", "mongo", "memcached", "elastic")
ADMIN_TOKENS = ("mailhog", "mailpit", "adminer", "phpmyadmin", "pgadmin", "mongo-express", "redis-commander")
WORKER_TOKENS = ("worker", "queue", "scheduler", "horizon", "cron", "celery")

# Container ports tried first when picking the port a service's domain should route to.
PRIMARY_HTTP_PORTS = (80, 443, 8000)

_TOKEN_SPLIT = re.compile(r"[-_.]")


def _word_matches(word: str, token: str) -> bool:
    # Longer tokens may prefix a word ("postgresql", "web1"); two-letter ones must be whole ("build" is no UI).
    return word == token or (len(token) > 2 and word.startswith(token))


def _matches(name: str, tokens: Iterable[str]) -> bool:
    """True when some token matches a run of ``name``'s dash/underscore/dot separated words."""
    words = _TOKEN_SPLIT.split(name.lower())
    for token in tokens:
        want = _TOKEN_SPLIT.split(token)
        for i in range(len(words) - len(want) + 1):
            window = words[i : i + len(want)]
            if window[:-1] == want[:-1] and _word_matches(window[-1], want[-1]):
                return True
    return False


def classify(name: str, ports: Iterable[int] = ()) -> ServiceRole:
    """Role of a compose service from its name, falling back to its container ports."""
    lowered = name.lower()
    if _matches(lowered, ADMIN_TOKENS):
        return ServiceRole.ADMIN
    if _matches(lowered, WORKER_TOKENS):
        return ServiceRole.WORKER
    if _matches(lowered, DATABASE_TOKENS):
        return ServiceRole.DATABASE
    if _matches(lowered, WEB_TOKENS):
        return ServiceRole.WEB
    if any(int(p) in WEB_PORTS for p in ports):
        return ServiceRole.WEB
    return ServiceRole.UNKNOWN


def declare_services(service_ports: Mapping[str, Iterable[int]]) -> list[ServiceSpec]:
    return [ServiceSpec.declare(name, list(ports)) for name, ports in service_ports.items()]


def pick_main(service_names: list[str]) -> str | None:
    for token in MAIN_TOKENS:
        for name in service_names:
            if _matches(name, (token,)):
                return name
    return service_names[0] if service_names else None


def target_port(ports: Iterable[int]) -> int | None:
    """Container port a service's domain routes to."""
    ports = [int(p) for p in ports]
    for p in PRIMARY_HTTP_PORTS:
        if p in ports:
            return p
    return ports[0] if ports else None


class NameAllocator:
    """Deterministic DNS names and proxy upstreams for a project's services. No I/O."""

    def __init__(
        self,
        tld: str = "test",
        upstream_host: str = "host.docker.internal",
        shared_network: bool = False,
    ) -> None:
        validate_tld(tld)
        self.tld = tld
        self.upstream_host = upstream_host
        self.shared_network = shared_network

    def domain(self, project: str) -> str:
        return f"{project}.{self.tld}"

    def derive(self, project: str, service_names: Iterable[str], main: str | None = None) -> ProjectNetworkIdentity:
        """Name every given service: the main one gets ``project.tld``, the rest ``service.project.tld``.

        The main service also keeps ``main.project.tld`` as an alias.
        """
        validate_project_name(project)
        names: list[str] = []
        for n in service_names:
            validate_service_name(n)
            if n not in names:
                names.append(n)

        if main is not None and main not in names:
            raise ValueError(f"Main service '{main}' is not one of the services of '{project}'.")
        main = main or pick_main(names)

        domain = self.domain(project)
        subdomains: dict[str, str] = {}
        aliases: dict[str, str] = {}
        for n in names:
            if n == main:
                subdomains[n] = domain
                aliases[n] = f"{n}.{domain}"
            else:
                subdomains[n] = f"{n}.{domain}"

        return ProjectNetworkIdentity(
            project=project,
            tld=self.tld,
            domain=domain,
            main_service=main,
            subdomains=subdomains,
            aliases=aliases,
        )

    def derive_for_specs(
        self, project: str, specs: list[ServiceSpec], main: str | None = None
    ) -> ProjectNetworkIdentity:
        """Like ``derive`` but only for web-facing services; an explicit ``main`` is always named."""
        names = [s.name for s in specs if s.web_facing or s.name == main]
        if main is None:
            main = pick_main(names)
        return self.derive(project, names, main=main)

    def upstream(self, project: str, service: str, host_port: int, container_port: int) -> str:
        if self.shared_network:
            return f"{project}-{service}-1:{container_port}"
        return f"{self.upstream_host}:{host_port}"

    def mappings(
        self,
        identity: ProjectNetworkIdentity,
        specs: list[ServiceSpec],
        allocation: Mapping[str, Mapping[int, int]],
    ) -> list[ServiceMapping]:
        """Render model for the proxy: one row per named domain that has an allocated port."""
        by_name = {s.name: s for s in specs}
        rows: list[ServiceMapping] = []
        for service, domain in identity.subdomains.items():
            allocated = allocation.get(service) or {}
            spec = by_name.get(service)
            declared = spec.ports if spec is not None else list(allocated)
            cport = target_port([p for p in declared if p in allocated])
            if cport is None:
                continue
            host_port = allocated[cport]
            upstream = self.upstream(identity.project, service, host_port, cport)
            is_main = service == identity.main_service
            rows.append(
                ServiceMapping(
                    service_name=service,
                    domain=domain,
                    host_port=host_port,
                    proxy_target_port=cport,
                    is_main=is_main,
                    upstream=upstream,
                )
            )
            alias = identity.aliases.get(service)
            if alias:
                rows.append(
                    ServiceMapping(
                        service_name=service,
                        domain=alias,
                        host_port=host_port,
                        proxy_target_port=cport,
                        is_main=is_main,
                        upstream=upstream,
                    )
                )
        return rows
