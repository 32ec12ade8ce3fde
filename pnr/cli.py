from __future__ import annotations

import argparse
import json
import sys

from .context import NetworkContext
from .errors import ReconcileError
from .reconciler import Reconciler
from .runtime import DNSStrategy


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def parse_service(value: str) -> tuple[str, list[int]]:
    """``web=80`` or ``web=80,443`` -> ("web", [80, 443])."""
    name, sep, ports = value.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=PORT[,PORT], got '{value}'")
    try:
        return name.strip(), [int(p) for p in ports.split(",") if p.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"ports must be integers in '{value}'")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pnr", description="Ports, DNS names and proxy routes for local compose projects")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_up = sub.add_parser("up", help="Allocate ports and install DNS + proxy routes for a project")
    s_up.add_argument("project")
    s_up.add_argument("--service", "-s", type=parse_service, action="append", required=True, metavar="NAME=PORT[,PORT]")
    s_up.add_argument("--main", help="Service that gets the bare project domain")
    s_up.add_argument("--dir", help="Project directory (compose file, git)")
    s_up.add_argument("--verify", action="store_true", help="HTTP-check every URL")

    s_down = sub.add_parser("down", help="Remove DNS + proxy routes and release ports")
    s_down.add_argument("project")

    s_st = sub.add_parser("status", help="Probe project status")
    s_st.add_argument("project")
    s_st.add_argument("--dir")
    s_st.add_argument("--verify", action="store_true")
    s_st.add_argument("--cached", action="store_true", help="Show the last probe instead of probing")

    sub.add_parser("ports", help="Show the port ledger")
    sub.add_parser("reconcile", help="Re-install routes and DNS records for every project in the ledger")

    s_clean = sub.add_parser("cleanup", help="Tear down ledger projects not listed with --keep")
    s_clean.add_argument("--keep", action="append", default=[], metavar="PROJECT")

    s_dns = sub.add_parser("dns", help="DNS backend")
    dns_sub = s_dns.add_subparsers(dest="dns_cmd", required=True)
    dns_sub.add_parser("status")
    dns_sub.add_parser("list", help="Domains per project")
    dns_sub.add_parser("stop", help="Stop the DNS container")
    s_use = dns_sub.add_parser("use", help="Pin the DNS backend")
    s_use.add_argument("strategy", choices=[s.value for s in DNSStrategy])

    s_proxy = sub.add_parser("proxy", help="Reverse proxy")
    proxy_sub = s_proxy.add_subparsers(dest="proxy_cmd", required=True)
    proxy_sub.add_parser("status")
    proxy_sub.add_parser("stop")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--project")

    s_srv = sub.add_parser("serve", help="Serve the read-only status API")
    s_srv.add_argument("--host", default="127.0.0.1")
    s_srv.add_argument("--port", type=int, default=8765)
    return p


def main(argv: list[str] | None = None, ctx: NetworkContext | None = None) -> int:
    args = build_parser().parse_args(argv)
    ctx = ctx or NetworkContext.create()
    try:
        return _run(args, ctx)
    except ReconcileError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


def _run(args: argparse.Namespace, ctx: NetworkContext) -> int:
    reconciler = Reconciler(ctx)

    if args.cmd == "up":
        result = reconciler.bring_online(
            args.project, dict(args.service), main=args.main, project_dir=args.dir, verify=args.verify
        )
        _print(result.to_dict())
        return 0

    if args.cmd == "down":
        _print({"project": args.project, "warnings": reconciler.tear_down(args.project)})
        return 0

    if args.cmd == "status":
        if args.cached:
            status = ctx.journal.cached_status(args.project)
            if status is None:
                print(f"error: no cached status for '{args.project}'", file=sys.stderr)
                return 1
        else:
            status = ctx.health.probe(args.project, project_dir=args.dir, verify=args.verify)
        _print(status.model_dump())
        return 0

    if args.cmd == "ports":
        _print({name: alloc.model_dump() for name, alloc in ctx.ledger.all().items()})
        return 0

    if args.cmd == "reconcile":
        _print(reconciler.reconcile_all())
        return 0

    if args.cmd == "cleanup":
        _print({"removed": reconciler.cleanup_orphans(args.keep)})
        return 0

    if args.cmd == "dns":
        if args.dns_cmd == "status":
            _print(ctx.dns.status())
        elif args.dns_cmd == "list":
            _print(ctx.dns.list_domains())
        elif args.dns_cmd == "stop":
            ctx.dns.stop()
            _print({"stopped": ctx.dns.container})
        elif args.dns_cmd == "use":
            ctx.dns.override(DNSStrategy(args.strategy), persist=True)
            _print({"strategy": args.strategy})
        return 0

    if args.cmd == "proxy":
        if args.proxy_cmd == "status":
            _print(ctx.proxy.status())
        elif args.proxy_cmd == "stop":
            ctx.proxy.stop()
            _print({"stopped": ctx.proxy.container})
        return 0

    if args.cmd == "events":
        _print(ctx.journal.latest_events(limit=args.limit, project=args.project))
        return 0

    if args.cmd == "serve":
        import uvicorn

        from .api import create_app

        uvicorn.run(create_app(ctx), host=args.host, port=args.port)
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
