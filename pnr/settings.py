from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    home: str = os.getenv("PNR_HOME", os.path.join(os.path.expanduser("~"), ".pnr"))
    tld: str = os.getenv("PNR_TLD", "test")
    port_range_start: int = _env_int("PNR_PORT_RANGE_START", 3000)
    port_range_end: int = _env_int("PNR_PORT_RANGE_END", 65535)
    command_timeout_s: int = _env_int("PNR_COMMAND_TIMEOUT_S", 60)

    # Shared bridge network for the DNS and proxy containers
    network: str = os.getenv("PNR_NETWORK", "pnr-net")
    network_subnet: str = os.getenv("PNR_NETWORK_SUBNET", "172.21.0.0/24")

    # Containerized DNS backend
    dns_container: str = os.getenv("PNR_DNS_CONTAINER", "pnr-dns")
    dns_image: str = os.getenv("PNR_DNS_IMAGE", "strm/dnsmasq:latest")
    dns_ip: str = os.getenv("PNR_DNS_IP", "172.21.0.53")
    dns_host_port: int = _env_int("PNR_DNS_HOST_PORT", 5353)
    dns_record_ip: str = os.getenv("PNR_DNS_RECORD_IP", "127.0.0.1")
    dns_health_attempts: int = _env_int("PNR_DNS_HEALTH_ATTEMPTS", 30)
    dns_health_interval_s: float = _env_float("PNR_DNS_HEALTH_INTERVAL_S", 1.0)
    restart_after_reload_failures: int = _env_int("PNR_RESTART_AFTER_RELOAD_FAILURES", 1)
    resolve_timeout_s: float = _env_float("PNR_RESOLVE_TIMEOUT_S", 0.5)

    # "container" or "host" pins the DNS backend; empty means probe Docker once.
    dns_strategy: str = os.getenv("PNR_DNS_STRATEGY", "")

    # Host-native DNS backend. Empty means "first existing candidate".
    dnsmasq_dir: str = os.getenv("PNR_DNSMASQ_DIR", "")

    # OS resolver stanza (/etc/resolver/<tld> on macOS)
    resolver_dir: str = os.getenv("PNR_RESOLVER_DIR", "/etc/resolver")
    manage_resolver: bool = _env_bool("PNR_MANAGE_RESOLVER", True)

    # Reverse proxy
    proxy_container: str = os.getenv("PNR_PROXY_CONTAINER", "pnr-proxy")
    proxy_image: str = os.getenv("PNR_PROXY_IMAGE", "nginx:alpine")
    proxy_ip: str = os.getenv("PNR_PROXY_IP", "172.21.0.80")
    proxy_upstream_host: str = os.getenv("PNR_PROXY_UPSTREAM_HOST", "host.docker.internal")
    proxy_shared_network: bool = _env_bool("PNR_PROXY_SHARED_NETWORK", False)

    # Status probing
    http_timeout_s: float = _env_float("PNR_HTTP_TIMEOUT_S", 2.0)

    @property
    def ledger_path(self) -> str:
        return os.path.join(self.home, "ports.json")

    @property
    def journal_path(self) -> str:
        return os.path.join(self.home, "pnr.db")

    @property
    def dns_dir(self) -> str:
        return os.path.join(self.home, "dns")

    @property
    def strategy_path(self) -> str:
        return os.path.join(self.dns_dir, "strategy")

    @property
    def dns_conf_dir(self) -> str:
        return os.path.join(self.dns_dir, "conf.d")

    @property
    def proxy_dir(self) -> str:
        return os.path.join(self.home, "proxy")

    @property
    def routes_dir(self) -> str:
        return os.path.join(self.proxy_dir, "sites-enabled")

    @property
    def certs_dir(self) -> str:
        return os.path.join(self.home, "certs")

    @property
    def wildcard_cert(self) -> str:
        return os.path.join(self.certs_dir, "wildcard.crt")

    @property
    def wildcard_key(self) -> str:
        return os.path.join(self.certs_dir, "wildcard.key")

    def has_wildcard_cert(self) -> bool:
        return os.path.isfile(self.wildcard_cert) and os.path.isfile(self.wildcard_key)


settings = Settings()
