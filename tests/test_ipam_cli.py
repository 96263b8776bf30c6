import pytest

from flock.ipam_cli import main


@pytest.fixture
def ipam(tmp_path, capsys):
    url = f"sqlite:///{tmp_path}/ipam.db"

    def run(*args):
        code = main(["--database-url", url, *args])
        captured = capsys.readouterr()
        return code, captured.out.strip(), captured.err

    return run


def test_address_lifecycle(ipam):
    assert ipam("create-network", "net-1", "10.0.1.0/30")[:2] == (0, "Network created")

    code, out, _ = ipam("allocate-address", "net-1", "ep-1")
    assert (code, out) == (0, "10.0.1.1")

    code, out, _ = ipam("allocate-address", "net-1", "ep-2", "10.0.1.2")
    assert (code, out) == (0, "10.0.1.2")

    code, out, _ = ipam("list-allocations", "net-1")
    assert out.splitlines() == ["ep-1: 10.0.1.1", "ep-2: 10.0.1.2"]

    code, _, err = ipam("allocate-address", "net-1", "ep-3")
    assert code == 2
    assert "ERROR" in err

    assert ipam("free-address", "net-1", "ep-1")[0] == 0
    code, out, _ = ipam("allocate-address", "net-1", "ep-3")
    assert (code, out) == (0, "10.0.1.1")


def test_port_lifecycle(ipam):
    assert ipam("create-host", "host-1", "30000", "30002")[0] == 0

    assert ipam("allocate-port", "host-1", "p1")[:2] == (0, "30000")
    assert ipam("allocate-port", "host-1", "p2")[:2] == (0, "30001")
    assert ipam("allocate-port", "host-1", "p3")[0] == 2

    assert ipam("free-port", "host-1", "p1")[0] == 0
    assert ipam("reserve-port", "host-1", "p4", "30000")[0] == 0
    code, out, _ = ipam("list-ports", "host-1")
    assert out.splitlines() == ["p4: 30000", "p2: 30001"]


def test_invalid_requests_exit_3(ipam):
    assert ipam("allocate-address", "missing", "ep-1")[0] == 3
    assert ipam("create-network", "net-1", "not-a-cidr")[0] == 3
    assert ipam("create-host", "host-1", "30010", "30000")[0] == 3


def test_usage_errors_exit_3_not_exhausted(ipam):
    code, _, err = ipam("allocate-port", "only-host-id")
    assert code == 3
    assert "the following arguments are required: port_id" in err

    assert ipam("create-host", "host-1", "low", "30000")[0] == 3
    assert ipam("no-such-command")[0] == 3


def test_empty_scope_listing(ipam):
    ipam("create-network", "net-1", "10.0.1.0/24")
    assert ipam("list-allocations", "net-1")[:2] == (0, "No allocations")
