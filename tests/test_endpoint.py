import json

import pytest

from flock.core.endpoint import EndpointKind
from flock.core.network import RecordedCAKeys
from flock.core.ipam import ipam_service
from flock.database.models import ResourceState
from flock.exceptions import ProvisioningError, ValidationError

BACKEND_HOST = "203.0.113.11"


def outputs(db, name):
    return db.query(ResourceState).filter_by(name=name).one().outputs


def test_hostname_change_replaces_identity(db, service, fleet, certs, declaration, declare):
    service.apply(db, declaration)
    before = outputs(db, "mesh-backend")

    report = service.apply(db, declare(hostname="api"))

    after = outputs(db, "mesh-backend")
    assert "mesh-backend" in report.replaced
    assert "mesh-backend-attachment" in report.replaced
    assert after["endpoint_id"] != before["endpoint_id"]
    assert after["overlay_ip"] != before["overlay_ip"]
    assert after["certificate"] != before["certificate"]
    assert certs.issued[-1]["hostname"] == "api.flock.internal"

    allocations = ipam_service.list_allocations(db, after["network_id"])
    assert before["endpoint_id"] not in allocations
    assert allocations[after["endpoint_id"]] == after["overlay_ip"]

    paths = {path for host, path in fleet.files if host == BACKEND_HOST}
    assert not any(p.endswith("/backend.json") for p in paths)
    assert any(p.endswith("/api.json") for p in paths)


def test_groups_change_reissues_certificate(db, service, certs, declaration, declare):
    service.apply(db, declaration)
    before = outputs(db, "mesh-backend")

    report = service.apply(db, declare(groups=("app", "db")))

    assert "mesh-backend" in report.replaced
    assert certs.issued[-1]["groups"] == ["app", "db"]
    assert outputs(db, "mesh-backend")["endpoint_id"] != before["endpoint_id"]


def test_firewall_change_keeps_identity_and_redeploys(db, service, fleet, certs, declaration, declare):
    service.apply(db, declaration)
    before = outputs(db, "mesh-backend")
    issued = len(certs.issued)

    report = service.apply(db, declare(inbound=({"host": "any", "port": 443, "proto": "tcp"},)))

    after = outputs(db, "mesh-backend")
    assert report.refreshed == ["mesh-backend"]
    assert report.replaced == ["mesh-backend-attachment"]
    assert after["endpoint_id"] == before["endpoint_id"]
    assert after["certificate"] == before["certificate"]
    assert len(certs.issued) == issued

    config_path = outputs(db, "mesh-backend-attachment")["config_path"]
    config = json.loads(fleet.files[(BACKEND_HOST, config_path)])
    assert config["firewall"]["inbound"] == [{"host": "any", "port": 443, "proto": "tcp"}]


def test_group_rules_are_compiled(db, service, fleet, declare):
    service.apply(db, declare(inbound=({"groups": ["app", "web"], "port": 8080},)))

    config_path = outputs(db, "mesh-backend-attachment")["config_path"]
    config = json.loads(fleet.files[(BACKEND_HOST, config_path)])
    assert config["firewall"]["inbound"] == [{"groups": ["app", "web"], "port": 8080, "proto": "any"}]


def test_named_host_rule_uses_network_domain(db, service, fleet, declare):
    service.apply(db, declare(outbound=({"host": "db", "port": 5432},)))

    config_path = outputs(db, "mesh-backend-attachment")["config_path"]
    config = json.loads(fleet.files[(BACKEND_HOST, config_path)])
    assert {"host": "db.flock.internal", "port": 5432, "proto": "any"} in config["firewall"]["outbound"]


class _Allocators:
    def __init__(self, db):
        self.db = db

    def __call__(self, connection=None):
        return self

    def allocate_address(self, network_id, address_id, avoid=()):
        return ipam_service.allocate_address(self.db, network_id, address_id, avoid=avoid)

    def free_address(self, network_id, address_id):
        return ipam_service.free_address(self.db, network_id, address_id)


def ca_key(resource):
    return f"ca-key:{resource}"


def _inputs(network_id):
    return {
        "name": "backend",
        "network_id": network_id,
        "prefix_length": 24,
        "domain": "flock.internal",
        "ipam_connection": None,
        "hostname": "backend",
        "groups": ["app"],
        "firewall": {"inbound": [], "outbound": []},
        "ca": {"resource": "mesh-ca-epoch-1", "certificate": "ca-cert", "not_after": "2099-01-01T00:00:00Z", "epoch": 1},
        "epoch": 1,
    }


def test_failed_issuance_releases_address(db, certs):
    ipam_service.create_network(db, "net-1", "10.0.1.0/24")
    certs.fail = True
    kind = EndpointKind(_Allocators(db), ca_key, certs)

    with pytest.raises(ProvisioningError):
        kind.create(_inputs("net-1"))

    assert ipam_service.get_allocation_stats(db, "net-1")["used"] == 0


def test_replacement_avoids_previous_address(db, certs):
    ipam_service.create_network(db, "net-1", "10.0.1.0/24")
    kind = EndpointKind(_Allocators(db), ca_key, certs)

    _, first = kind.create(_inputs("net-1"))
    kind.delete(first["endpoint_id"], first)
    _, second = kind.create_replacement(_inputs("net-1"), first)

    assert first["overlay_ip"] == "10.0.1.1"
    assert second["overlay_ip"] == "10.0.1.2"


def test_signature_from_retired_epoch_forces_replace(db, certs):
    kind = EndpointKind(_Allocators(db), ca_key, certs)
    old = {**_inputs("net-1"), "signing_epoch": 1}

    assert kind.diff("id", old, {**_inputs("net-1"), "epoch": 2}).replace is False
    assert kind.diff("id", old, {**_inputs("net-1"), "epoch": 3}).replace_keys == ["signing_epoch"]


def test_lowered_epoch_forces_replace(db, certs):
    kind = EndpointKind(_Allocators(db), ca_key, certs)
    old = {**_inputs("net-1"), "signing_epoch": 3}

    assert kind.diff("id", old, {**_inputs("net-1"), "epoch": 3}).replace is False
    assert kind.diff("id", old, {**_inputs("net-1"), "epoch": 2}).replace_keys == ["signing_epoch"]


def test_ca_key_is_resolved_at_issuance_and_not_recorded(db, certs):
    ipam_service.create_network(db, "net-1", "10.0.1.0/24")
    kind = EndpointKind(_Allocators(db), ca_key, certs)

    _, created = kind.create(_inputs("net-1"))

    assert certs.issued[-1]["ca_key"] == "ca-key:mesh-ca-epoch-1"
    assert set(created["ca"]) == {"resource", "certificate", "not_after", "epoch"}


def test_recorded_ca_key_lookup(db, service, declaration):
    service.apply(db, declaration)
    keys = RecordedCAKeys(db)

    assert keys("mesh-ca-epoch-1") == "ca-key:mesh-ca-epoch-1"
    with pytest.raises(ValidationError):
        keys("mesh-ca-epoch-9")
    assert "private_key" not in outputs(db, "mesh-backend")["ca"]
    assert "private_key" not in outputs(db, "mesh-backend-attachment")["endpoint"]["ca"]
