import json

import pytest

from pnr.cli import main, parse_service
from pnr.runtime import DNSStrategy


def test_parse_service():
    assert parse_service("web=80,443") == ("web", [80, 443])
    assert parse_service("worker=") == ("worker", [])


@pytest.mark.parametrize("value", ["web", "=80", "web=eighty"])
def test_parse_service_rejects_garbage(value):
    import argparse

    with pytest.raises(argparse.ArgumentTypeError):
        parse_service(value)


def test_up_prints_result(ctx, capsys):
    rc = main(["up", "blog", "-s", "web=80", "-s", "db=5432"], ctx=ctx)

    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out["ports"] == {"web": {"80": 8000}, "db": {"5432": 5432}}
    assert out["domains"] == ["blog.test", "web.blog.test"]
    assert out["dns_backend"] == "container"


def test_down_releases_ports(ctx, capsys):
    main(["up", "blog", "-s", "web=80"], ctx=ctx)
    capsys.readouterr()

    assert main(["down", "blog"], ctx=ctx) == 0
    assert json.loads(capsys.readouterr().out) == {"project": "blog", "warnings": []}
    assert ctx.ledger.get("blog") is None


def test_ports_command(ctx, capsys):
    main(["up", "blog", "-s", "web=80"], ctx=ctx)
    capsys.readouterr()

    main(["ports"], ctx=ctx)

    assert json.loads(capsys.readouterr().out)["blog"]["ports"] == {"web:80": 8000}


def test_fatal_error_exits_one_with_subsystem(ctx, runner, capsys):
    runner.on("docker", "run", returncode=125, stderr="port is already allocated")

    rc = main(["up", "blog", "-s", "web=80"], ctx=ctx)

    assert rc == 1
    assert "[proxy]" in capsys.readouterr().err


def test_invalid_name_exits_two(ctx, capsys):
    assert main(["up", "Blog", "-s", "web=80"], ctx=ctx) == 2
    assert "Invalid project name" in capsys.readouterr().err


def test_dns_use_pins_strategy(ctx, capsys, settings):
    assert main(["dns", "use", "host"], ctx=ctx) == 0
    assert ctx.dns.strategy() is DNSStrategy.HOST
    assert open(settings.strategy_path).read().strip() == "host"


def test_status_cached_without_probe(ctx, capsys):
    assert main(["status", "blog", "--cached"], ctx=ctx) == 1

    main(["status", "blog"], ctx=ctx)
    capsys.readouterr()
    assert main(["status", "blog", "--cached"], ctx=ctx) == 0
    assert json.loads(capsys.readouterr().out)["project"] == "blog"


def test_events_command(ctx, capsys):
    main(["up", "blog", "-s", "web=80"], ctx=ctx)
    capsys.readouterr()

    main(["events", "--limit", "3", "--project", "blog"], ctx=ctx)

    events = json.loads(capsys.readouterr().out)
    assert len(events) == 3
    assert all(e["project"] == "blog" for e in events)
