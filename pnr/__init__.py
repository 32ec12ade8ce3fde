"""Project Network Reconciler (PNR).

Keeps the network identity of containerized local-development projects consistent:
 - host port allocation (a persisted, globally unique ledger)
 - DNS names for each web-facing service (containerized dnsmasq, host dnsmasq fallback)
 - reverse-proxy routes (one nginx route file per project)
 - a derived running/partial/stopped status with reachable URLs

The DNS server, the proxy and the container runtime are external processes; this package only
drives their configuration and reloads them.
"""

__version__ = "0.3.0"
