import json
import os

import pytest

from pnr.errors import AllocationExhausted
from pnr.reconciler import Reconciler


def _ps(*records):
    return "\n".join(json.dumps(r) for r in records) + "\n"


def test_bring_online_runs_every_step_in_order(ctx, runner, settings):
    runner.on(
        "docker", "compose", "-p", "blog", "ps",
        stdout=_ps({"Service": "web", "State": "running", "Publishers": [{"TargetPort": 80, "PublishedPort": 8000}]}),
    )

    result = Reconciler(ctx).bring_online("blog", {"web": [80], "db": [5432], "worker": []})

    assert result.ports == {"web": {80: 8000}, "db": {5432: 5432}}
    assert result.identity.domains() == ["blog.test", "web.blog.test"]
    assert [m.domain for m in result.mappings] == ["blog.test", "web.blog.test"]
    assert result.dns.backend == "container"
    assert result.status.overall == "running"
    assert result.warnings == []

    route = os.path.join(settings.routes_dir, "blog.conf")
    fragment = os.path.join(settings.dns_conf_dir, "blog.conf")
    assert "proxy_pass http://host.docker.internal:8000;" in open(route).read()
    assert "address=/blog.test/127.0.0.1" in open(fragment).read()

    runs = [c[c.index("--name") + 1] for c in runner.ran("docker", "run")]
    assert runs == ["pnr-proxy", "pnr-dns"]


def test_bring_online_is_idempotent(ctx, runner):
    first = Reconciler(ctx).bring_online("blog", {"web": [80]})
    second = Reconciler(ctx).bring_online("blog", {"web": [80]})

    assert first.ports == second.ports
    assert len(runner.ran("docker", "run")) == 2


def test_bring_online_with_explicit_main(ctx):
    result = Reconciler(ctx).bring_online("shop", {"web": [80], "api": [3000]}, main="api")
    assert result.identity.subdomains == {"web": "web.shop.test", "api": "shop.test"}


def test_bring_online_without_web_services_installs_nothing(ctx, settings):
    result = Reconciler(ctx).bring_online("jobs", {"worker": [], "redis": [6379]})

    assert result.mappings == []
    assert not os.path.exists(os.path.join(settings.routes_dir, "jobs.conf"))
    assert not os.path.exists(os.path.join(settings.dns_conf_dir, "jobs.conf"))


def test_bring_online_surfaces_warnings(ctx, runner):
    Reconciler(ctx).bring_online("blog", {"web": [80]})
    runner.on("docker", "exec", "pnr-proxy", "nginx", "-s", "reload", returncode=1)

    result = Reconciler(ctx).bring_online("blog", {"web": [80], "api": [3000]})

    assert any("[proxy]" in w for w in result.warnings)


def test_fatal_error_is_journaled_and_raised(ctx, settings):
    from dataclasses import replace

    from pnr.context import NetworkContext

    small = NetworkContext.create(
        replace(settings, port_range_start=3000, port_range_end=3000),
        runner=ctx.runner,
        port_probe=lambda p: False,
        docker_probe=lambda: True,
    )

    with pytest.raises(AllocationExhausted):
        Reconciler(small).bring_online("blog", {"db": [5432]})

    events = small.journal.latest_events(project="blog")
    assert events[0]["level"] == "ERROR"
    assert "ports" in events[0]["message"]


def test_tear_down_reverses_bring_online(ctx, settings):
    Reconciler(ctx).bring_online("blog", {"web": [80]})

    warnings = Reconciler(ctx).tear_down("blog")

    assert warnings == []
    assert ctx.ledger.get("blog") is None
    assert not os.path.exists(os.path.join(settings.routes_dir, "blog.conf"))
    assert not os.path.exists(os.path.join(settings.dns_conf_dir, "blog.conf"))
    assert ctx.journal.cached_status("blog") is None


def test_released_port_is_reused_by_next_project(ctx):
    r = Reconciler(ctx)
    r.bring_online("blog", {"web": [80]})
    r.tear_down("blog")

    assert r.bring_online("shop", {"web": [80]}).ports == {"web": {80: 8000}}


def test_reconcile_all_reinstalls_lost_routes(ctx, settings):
    r = Reconciler(ctx)
    r.bring_online("blog", {"web": [80]})
    r.bring_online("shop", {"app": [3000]})
    os.remove(os.path.join(settings.routes_dir, "blog.conf"))
    os.remove(os.path.join(settings.dns_conf_dir, "shop.conf"))

    assert r.reconcile_all() == {"blog": [], "shop": []}
    assert os.path.exists(os.path.join(settings.routes_dir, "blog.conf"))
    assert os.path.exists(os.path.join(settings.dns_conf_dir, "shop.conf"))


def test_cleanup_orphans_tears_down_unknown_projects(ctx, settings):
    r = Reconciler(ctx)
    r.bring_online("blog", {"web": [80]})
    r.bring_online("shop", {"web": [80]})

    assert r.cleanup_orphans(["shop"]) == ["blog"]
    assert set(ctx.ledger.all()) == {"shop"}
    assert ctx.proxy.installed_projects() == ["shop"]
    assert set(ctx.dns.list_domains()) == {"shop"}
