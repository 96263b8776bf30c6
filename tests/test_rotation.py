import json

from flock.database.models import ResourceState

BACKEND_HOST = "203.0.113.11"


def outputs(db, name):
    return db.query(ResourceState).filter_by(name=name).one().outputs


def ca_epochs(db):
    return sorted(s.outputs["epoch"] for s in db.query(ResourceState).filter_by(kind="ca"))


def worker(hostname="worker"):
    return {
        "name": hostname,
        "network": "mesh",
        "host": "host2",
        "hostname": hostname,
        "groups": ["app"],
        "firewall": {"inbound": [], "outbound": []},
    }


def backend():
    return {**worker("backend"), "firewall": {"inbound": [{"host": "any", "port": 80}], "outbound": []}}


def test_network_holds_exactly_two_ca_generations(db, service, declare):
    for epoch in (1, 2, 3, 4):
        service.apply(db, declare(epoch=epoch))
        assert ca_epochs(db) == [epoch - 1, epoch]


def test_rotation_keeps_previous_ca_and_existing_certificates(db, service, fleet, certs, declaration, declare):
    service.apply(db, declaration)
    previous_ca = outputs(db, "mesh-ca-epoch-1")
    backend_before = outputs(db, "mesh-backend")

    report = service.apply(db, declare(epoch=2))

    assert report.deleted == ["mesh-ca-epoch-0"]
    assert "mesh-ca-epoch-2" in report.created
    assert "mesh-ca-epoch-1" in report.unchanged
    assert outputs(db, "mesh-ca-epoch-1") == previous_ca
    assert "mesh-backend" in report.refreshed
    assert "mesh-backend-attachment" in report.replaced

    backend_after = outputs(db, "mesh-backend")
    assert backend_after["certificate"] == backend_before["certificate"]
    assert backend_after["signing_epoch"] == 1

    config_path = outputs(db, "mesh-backend-attachment")["config_path"]
    bundle = json.loads(fleet.files[(BACKEND_HOST, config_path)])["pki"]["ca"]
    assert bundle == outputs(db, "mesh-ca-epoch-2")["certificate"] + previous_ca["certificate"]
    assert set(certs.cas) == {"mesh-ca-epoch-0", "mesh-ca-epoch-1", "mesh-ca-epoch-2"}


def test_new_endpoint_is_signed_by_current_ca(db, service, certs, declaration, declare):
    service.apply(db, declaration)
    service.apply(db, declare(epoch=2))

    service.apply(db, declare(epoch=2, endpoints=[backend(), worker()]))

    assert certs.issued[-1]["hostname"] == "worker.flock.internal"
    assert certs.issued[-1]["ca_key"] == "ca-key:mesh-ca-epoch-2"
    assert outputs(db, "mesh-worker")["signing_epoch"] == 2


def test_certificates_from_retired_epoch_are_reissued(db, service, certs, declaration, declare):
    service.apply(db, declaration)
    service.apply(db, declare(epoch=2, endpoints=[backend(), worker()]))
    old_backend = outputs(db, "mesh-backend")
    old_worker = outputs(db, "mesh-worker")

    report = service.apply(db, declare(epoch=3, endpoints=[backend(), worker()]))

    assert "mesh-backend" in report.replaced
    assert "mesh-worker" in report.refreshed
    new_backend = outputs(db, "mesh-backend")
    assert new_backend["endpoint_id"] != old_backend["endpoint_id"]
    assert new_backend["signing_epoch"] == 3
    assert new_backend["certificate"].endswith("ca-key:mesh-ca-epoch-3")
    assert outputs(db, "mesh-worker")["certificate"] == old_worker["certificate"]


def test_lowered_epoch_reissues_certificates_of_dropped_ca(db, service, declare):
    service.apply(db, declare(epoch=3))
    assert outputs(db, "mesh-backend")["signing_epoch"] == 3

    report = service.apply(db, declare(epoch=2))

    assert ca_epochs(db) == [1, 2]
    assert "mesh-ca-epoch-3" in report.deleted
    assert {"mesh-backend", "mesh-lighthouse0"} <= set(report.replaced)
    backend = outputs(db, "mesh-backend")
    assert backend["signing_epoch"] == 2
    assert backend["certificate"].endswith("ca-key:mesh-ca-epoch-2")
