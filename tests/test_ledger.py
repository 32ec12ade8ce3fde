import json
import socket

import pytest

from pnr.errors import AllocationExhausted, ReconcileError
from pnr.ledger import WEB_PORT_ALTERNATES, PortLedger, port_is_bindable


def _ledger(tmp_path, start=3000, end=65535, busy=()):
    busy = set(busy)
    return PortLedger(str(tmp_path / "ports.json"), start, end, probe=lambda p: p not in busy)


def test_container_port_inside_range_is_used_as_is(tmp_path):
    ledger = _ledger(tmp_path)
    assert ledger.allocate("shop", {"app": [3000], "api": [4000]}) == {"app": {3000: 3000}, "api": {4000: 4000}}


def test_blog_web_gets_alternate_and_db_comes_from_cursor(tmp_path):
    # 80 is held by the proxy, 5432 by a Postgres running on the host.
    ledger = _ledger(tmp_path, busy={80, 5432})

    ports = ledger.allocate("blog", {"web": [80], "db": [5432]})

    assert ports["web"][80] == 8000
    assert ports["db"][5432] == 3000
    data = json.loads((tmp_path / "ports.json").read_text())
    assert data["next_port"] == 3001
    assert data["allocations"]["blog"]["ports"] == {"web:80": 8000, "db:5432": 3000}
    assert data["allocations"]["blog"]["reserved"] is True


def test_web_alternate_skips_ports_claimed_by_other_projects(tmp_path):
    ledger = _ledger(tmp_path)
    assert ledger.allocate("shop", {"web": [80]}) == {"web": {80: 8000}}
    assert ledger.allocate("blog", {"web": [80]}) == {"web": {80: 8001}}


def test_exhausted_alternates_fall_back_to_range(tmp_path):
    ledger = _ledger(tmp_path, busy=set(WEB_PORT_ALTERNATES))
    assert ledger.allocate("shop", {"web": [80]}) == {"web": {80: 3000}}


def test_host_ports_are_unique_across_projects(tmp_path):
    ledger = _ledger(tmp_path)
    seen = []
    for name in ["a", "b", "c", "d", "e", "f"]:
        ports = ledger.allocate(name, {"web": [80], "app": [3000], "db": [5432], "cache": [6379]})
        seen += [h for per_service in ports.values() for h in per_service.values()]

    assert len(seen) == len(set(seen))


def test_allocate_is_idempotent(tmp_path):
    ledger = _ledger(tmp_path)
    first = ledger.allocate("shop", {"web": [80], "db": [5432]})
    before = (tmp_path / "ports.json").read_text()

    second = ledger.allocate("shop", {"web": [80], "db": [5432]})

    assert first == second
    assert (tmp_path / "ports.json").read_text() == before


def test_cursor_advances_past_tried_ports(tmp_path):
    ledger = _ledger(tmp_path, busy={3000, 3001})
    assert ledger.allocate("a", {"x": [1]}) == {"x": {1: 3002}}
    assert ledger.allocate("b", {"x": [1]}) == {"x": {1: 3003}}


def test_release_then_reallocate_reuses_port(tmp_path):
    ledger = _ledger(tmp_path, start=3000, end=3001)
    assert ledger.allocate("a", {"x": [1]}) == {"x": {1: 3000}}
    assert ledger.allocate("b", {"x": [1]}) == {"x": {1: 3001}}

    assert ledger.release("a") is True
    assert ledger.get("a") is None

    # The cursor wraps around to the start of the range.
    assert ledger.allocate("c", {"x": [1]}) == {"x": {1: 3000}}


def test_release_unknown_project_is_noop(tmp_path):
    assert _ledger(tmp_path).release("ghost") is False


def test_exhaustion_persists_nothing(tmp_path):
    ledger = _ledger(tmp_path, start=3000, end=3002)
    ledger.allocate("a", {"x": [1], "y": [2]})

    with pytest.raises(AllocationExhausted) as exc:
        ledger.allocate("b", {"x": [1], "y": [2]})

    assert exc.value.subsystem == "ports"
    assert exc.value.remediation
    assert ledger.get("b") is None
    assert set(ledger.all()) == {"a"}


def test_topology_change_keeps_ports_of_surviving_services(tmp_path):
    ledger = _ledger(tmp_path)
    ledger.allocate("shop", {"web": [80], "db": [5432]})

    ports = ledger.allocate("shop", {"web": [80], "worker": [9000]})

    assert ports == {"web": {80: 8000}, "worker": {9000: 9000}}
    assert set(ledger.get("shop").ports) == {"web:80", "worker:9000"}


def test_request_covered_by_stored_allocation_returns_it(tmp_path):
    ledger = _ledger(tmp_path)
    ledger.allocate("shop", {"web": [80], "db": [5432]})

    assert ledger.allocate("shop", {"web": [80]}) == {"web": {80: 8000}}
    assert set(ledger.get("shop").ports) == {"web:80", "db:5432"}


def test_reads_camel_case_cursor(tmp_path):
    (tmp_path / "ports.json").write_text(json.dumps({"allocations": {}, "nextPort": 4100}))
    ledger = _ledger(tmp_path)
    assert ledger.allocate("shop", {"x": [1]}) == {"x": {1: 4100}}


def test_corrupt_ledger_names_fix(tmp_path):
    (tmp_path / "ports.json").write_text('{"allocations": {"x": {"ports": "nope"}}}')
    with pytest.raises(ReconcileError) as exc:
        _ledger(tmp_path).allocate("shop", {"x": [1]})
    assert "ports.json" in str(exc.value)


def test_cleanup_orphans(tmp_path):
    ledger = _ledger(tmp_path)
    for name in ["a", "b", "c"]:
        ledger.allocate(name, {"web": [80]})

    assert ledger.cleanup_orphans(["b"]) == ["a", "c"]
    assert set(ledger.all()) == {"b"}
    assert ledger.cleanup_orphans(["b"]) == []


def test_mapping_parses_keys(tmp_path):
    ledger = _ledger(tmp_path)
    ledger.allocate("shop", {"web": [80, 443]})
    assert ledger.mapping("shop") == {"web": {80: 8000, 443: 3000}}


@pytest.mark.parametrize("project", ["Shop", "-shop", "shop.local", ""])
def test_invalid_project_names_are_rejected(tmp_path, project):
    with pytest.raises(ValueError):
        _ledger(tmp_path).allocate(project, {"web": [80]})


def test_invalid_port_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        _ledger(tmp_path).allocate("shop", {"web": [70000]})


def test_default_probe_skips_port_held_outside_the_ledger(tmp_path):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as held:
        held.bind(("", 0))
        held.listen()
        port = held.getsockname()[1]

        assert port_is_bindable(port) is False
        ledger = PortLedger(str(tmp_path / "ports.json"), port, port + 1)

        assert ledger.allocate("blog", {"web": [port]}) == {"web": {port: port + 1}}
