import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")

import shlex
from contextlib import contextmanager

import pytest
from sqlalchemy.orm import sessionmaker

from flock.core.cert_manager import Identity
from flock.core.deployment import DeploymentService
from flock.core.ssh import CommandResult
from flock.database.session import build_engine, init_db
from flock.exceptions import ProvisioningError, SSHConnectionError
from flock.schemas.connection import SSHConnection
from flock.schemas.declaration import Declaration

CA_NOT_AFTER = "2099-01-01T00:00:00Z"


class FakeSession:
    def __init__(self, fleet, connection):
        self.fleet = fleet
        self.connection = connection

    def run(self, command, input=None):
        host = self.connection.host
        self.fleet.log.append((host, "run", command))
        for pattern, stderr in self.fleet.failures.items():
            if pattern in command:
                return CommandResult(1, "", stderr)
        if command.startswith("rm -f "):
            self.fleet.files.pop((host, shlex.split(command)[2]), None)
        return CommandResult(0, "", "")

    def upload(self, content, remote_path):
        host = self.connection.host
        self.fleet.log.append((host, "upload", remote_path))
        self.fleet.files[(host, remote_path)] = content
        return CommandResult(0, "", "")


class FakeFleet:
    """Records every command and upload per host instead of using SSH"""

    def __init__(self):
        self.log = []
        self.files = {}
        self.failures = {}
        self.unreachable = set()
        self.sessions = 0

    @contextmanager
    def connect(self, connection):
        connection = SSHConnection.parse(connection)
        if connection.host in self.unreachable:
            raise SSHConnectionError(f"Could not connect to {connection}")
        self.sessions += 1
        yield FakeSession(self, connection)

    def commands(self, host=None):
        return [c for h, op, c in self.log if op == "run" and (host is None or h == host)]

    def uploads(self, host=None):
        return [c for h, op, c in self.log if op == "upload" and (host is None or h == host)]


class FakeCertManager:
    """Deterministic stand-in for nebula-cert-manager"""

    def __init__(self):
        self.cas = []
        self.issued = []
        self.fail = False

    def create_ca(self, name):
        self.cas.append(name)
        return Identity(
            private_key=f"ca-key:{name}",
            certificate=f"-----BEGIN NEBULA CERTIFICATE-----\n{name}\n-----END NEBULA CERTIFICATE-----\n",
            not_before="2026-01-01T00:00:00Z",
            not_after=CA_NOT_AFTER,
        )

    def issue_endpoint(self, ca_key, ca_cert, ca_not_after, hostname, network, groups):
        if self.fail:
            raise ProvisioningError("Certificate manager failed", exit_code=1, stderr="invalid CA key")
        self.issued.append({"ca_key": ca_key, "hostname": hostname, "network": network, "groups": list(groups)})
        serial = len(self.issued)
        return Identity(
            private_key=f"host-key:{serial}",
            certificate=f"cert:{serial}:{hostname}:{network}:{','.join(groups)}:{ca_key}",
            not_before="2026-01-01T00:00:00Z",
            not_after=ca_not_after,
        )


@pytest.fixture
def db():
    engine = build_engine("sqlite://")
    init_db(engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def fleet():
    return FakeFleet()


@pytest.fixture
def certs():
    return FakeCertManager()


@pytest.fixture
def service(fleet, certs):
    return DeploymentService(connector=fleet.connect, certs=certs)


def make_declaration(
    epoch=1,
    hostname="backend",
    groups=("app",),
    inbound=({"host": "any", "port": 80},),
    outbound=(),
    endpoints=None,
    ip_range="10.0.1.0/24",
):
    if endpoints is None:
        endpoints = [{
            "name": "backend",
            "network": "mesh",
            "host": "host2",
            "hostname": hostname,
            "groups": list(groups),
            "firewall": {"inbound": list(inbound), "outbound": list(outbound)},
        }]
    return Declaration.model_validate({
        "hosts": [
            {"name": "host1", "connection": {"host": "203.0.113.10", "user": "root"}},
            {"name": "host2", "connection": {"host": "203.0.113.11", "user": "root"}},
        ],
        "networks": [
            {"name": "mesh", "epoch": epoch, "ip_range": ip_range, "lighthouses": ["host1"]},
        ],
        "endpoints": endpoints,
    })


@pytest.fixture
def declaration():
    return make_declaration()


@pytest.fixture
def declare():
    return make_declaration
