from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Query

from . import __version__
from .context import NetworkContext
from .models import ProjectAllocation, ProjectStatus


def create_app(ctx: NetworkContext | None = None) -> FastAPI:
    """Read-only HTTP view of ledger, DNS and project status."""
    ctx = ctx or NetworkContext.create()
    app = FastAPI(title="Project Network Reconciler", version=__version__)

    @app.get("/ports", response_model=dict[str, ProjectAllocation])
    def list_ports() -> dict[str, ProjectAllocation]:
        return ctx.ledger.all()

    @app.get("/projects/{project}/status", response_model=ProjectStatus)
    def project_status(
        project: str,
        project_dir: str | None = Query(None, alias="dir", description="Project directory holding the compose file"),
        verify: bool = False,
        cached: bool = Query(False, description="Return the last probe instead of probing"),
    ) -> ProjectStatus:
        if cached:
            status = ctx.journal.cached_status(project)
            if status is None:
                raise HTTPException(status_code=404, detail=f"No cached status for '{project}'")
            return status
        try:
            return ctx.health.probe(project, project_dir=project_dir, verify=verify)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/dns")
    def dns_status() -> dict[str, Any]:
        return ctx.dns.status()

    @app.get("/proxy")
    def proxy_status() -> dict[str, Any]:
        return ctx.proxy.status()

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), project: str | None = None) -> list[dict[str, Any]]:
        return ctx.journal.latest_events(limit=limit, project=project)

    return app
