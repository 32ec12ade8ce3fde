from __future__ import annotations

from enum import Enum

from pydantic import AliasChoices, BaseModel, Field


# Conventional ports an HTTP app listens on inside its container.
WEB_PORTS = frozenset({80, 443, 3000, 4000, 5000, 8000, 8080, 8443, 9000})


class ServiceRole(str, Enum):
    WEB = "web"
    WORKER = "worker"
    DATABASE = "database"
    ADMIN = "admin"
    UNKNOWN = "unknown"


class ServiceSpec(BaseModel):
    name: str = Field(..., description="Compose service name (dns-safe)")
    ports: list[int] = Field(default_factory=list, description="Container ports the service listens on")
    role: ServiceRole = ServiceRole.UNKNOWN

    @classmethod
    def declare(cls, name: str, ports: list[int] | tuple[int, ...] = ()) -> "ServiceSpec":
        """Build a spec with its role classified once, here."""
        from .names import classify

        ports = [int(p) for p in ports]
        return cls(name=name, ports=ports, role=classify(name, ports))

    @property
    def web_facing(self) -> bool:
        # Admin UIs (mail catchers, DB admins) count only when they sit on a conventional web port.
        if self.role is ServiceRole.ADMIN:
            return any(p in WEB_PORTS for p in self.ports)
        return self.role is ServiceRole.WEB


# Ledger file


class ProjectAllocation(BaseModel):
    project_name: str
    ports: dict[str, int] = Field(default_factory=dict, description='"service:containerPort" -> host port')
    reserved: bool = True


class LedgerFile(BaseModel):
    allocations: dict[str, ProjectAllocation] = Field(default_factory=dict)
    next_port: int = Field(3000, ge=1, le=65536, validation_alias=AliasChoices("next_port", "nextPort"))


# Naming and routing


class ProjectNetworkIdentity(BaseModel):
    project: str
    tld: str
    domain: str = Field(..., description="Primary domain, <project>.<tld>")
    main_service: str | None = None
    subdomains: dict[str, str] = Field(default_factory=dict, description="service -> its DNS name")
    aliases: dict[str, str] = Field(default_factory=dict, description="main service -> service.project.tld")

    def domains(self) -> list[str]:
        names = {self.domain, *self.subdomains.values(), *self.aliases.values()}
        return sorted(names)


class ServiceMapping(BaseModel):
    service_name: str
    domain: str
    host_port: int = Field(..., ge=1, le=65535)
    proxy_target_port: int = Field(..., ge=1, le=65535, description="Container port behind the host port")
    is_main: bool = False
    upstream: str = Field("", description="host:port the proxy forwards to")


# Status


class PortBinding(BaseModel):
    container_port: int
    host_port: int


class ServiceStatus(BaseModel):
    name: str
    status: str = Field(..., description="running|stopped|unhealthy")
    role: ServiceRole = ServiceRole.UNKNOWN
    ports: list[PortBinding] = Field(default_factory=list)
    url: str | None = None
    reachable: bool | None = None


class ProjectStatus(BaseModel):
    project: str
    overall: str = Field(..., description="running|partial|stopped|no-services|no-docker|docker-error")
    services: list[ServiceStatus] = Field(default_factory=list)
    urls: list[str] = Field(default_factory=list)
    git_branch: str | None = None
    git_status: str | None = None
    probed_at: str = ""
