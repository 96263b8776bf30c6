import json
import subprocess
from datetime import datetime, timezone

import pytest

from flock.core.cert_manager import CertManager
from flock.exceptions import ConfigError, ProvisioningError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class ScriptedBinary:
    """Answers each invocation based on MANAGER_MODE/MANAGER_TARGET"""

    def __init__(self, returncode=0):
        self.calls = []
        self.returncode = returncode

    def __call__(self, cmd, env=None, **kwargs):
        self.calls.append(env)
        stdout = f"PEM:{env['MANAGER_MODE']}:{env['MANAGER_TARGET']}\n"
        return subprocess.CompletedProcess(cmd, self.returncode, stdout=stdout, stderr="bad ca config\n")


def manager(runner):
    return CertManager(binary="nebula-cert-manager", runner=runner, clock=lambda: NOW)


def test_create_ca_window_and_protocol():
    runner = ScriptedBinary()

    identity = manager(runner).create_ca("mesh-ca-epoch-1")

    key_env, cert_env = runner.calls
    assert (key_env["MANAGER_MODE"], key_env["MANAGER_TARGET"]) == ("ca", "key")
    assert cert_env["CA_KEY"] == "PEM:ca:key"
    config = json.loads(cert_env["CA_CONFIG"])
    assert config == {
        "name": "mesh-ca-epoch-1",
        "validNotBefore": "2026-03-01T11:55:00Z",
        "validNotAfter": "2026-03-08T12:00:00Z",
    }
    assert identity.private_key == "PEM:ca:key"
    assert identity.certificate == "PEM:ca:cert"


def test_endpoint_validity_is_clamped_to_ca():
    runner = ScriptedBinary()

    identity = manager(runner).issue_endpoint(
        ca_key="CAKEY",
        ca_cert="CACERT",
        ca_not_after="2026-03-08T12:00:00Z",
        hostname="backend.flock.internal",
        network="10.0.1.2/24",
        groups=["app"],
    )

    key_env, cert_env = runner.calls
    assert (key_env["MANAGER_MODE"], key_env["MANAGER_TARGET"]) == ("host", "key")
    assert cert_env["HOST_KEY"] == "PEM:host:key"
    assert cert_env["CA_CERT"] == "CACERT"
    config = json.loads(cert_env["CERT_CONFIG"])
    assert config["hostname"] == "backend.flock.internal"
    assert config["network"] == "10.0.1.2/24"
    assert config["groups"] == ["app"]
    assert config["validNotAfter"] == "2026-03-08T12:00:00Z"
    assert identity.not_after == "2026-03-08T12:00:00Z"


def test_nonzero_exit_carries_stderr():
    with pytest.raises(ProvisioningError) as excinfo:
        manager(ScriptedBinary(returncode=1)).create_ca("mesh-ca-epoch-1")

    assert excinfo.value.stderr == "bad ca config\n"
    assert "PEM" not in str(excinfo.value)


def test_missing_binary_is_config_error():
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    with pytest.raises(ConfigError):
        manager(missing).create_ca("mesh-ca-epoch-1")
