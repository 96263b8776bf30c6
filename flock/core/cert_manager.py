# flock/core/cert_manager.py
"""
Certificate Manager
Issues CA and endpoint identities through the nebula-cert-manager
subprocess. Everything it prints on stdout is key material.
"""

import json
import os
import subprocess
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from flock.config import settings
from flock.exceptions import ConfigError, ProvisioningError

logger = logging.getLogger(__name__)


def isoformat(moment: datetime) -> str:
    """RFC 3339 timestamp in UTC"""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_isoformat(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Identity:
    """Private key and certificate, both PEM"""
    private_key: str
    certificate: str
    not_before: str
    not_after: str

    def to_dict(self) -> dict:
        return {
            "private_key": self.private_key,
            "certificate": self.certificate,
            "not_before": self.not_before,
            "not_after": self.not_after,
        }


class CertManager:
    """
    Client for the certificate-issuance protocol

    Environment passed to the binary:
        MANAGER_MODE    ca | host
        MANAGER_TARGET  key | cert
        CA_KEY, CA_CERT, HOST_KEY  PEM material as applicable
        CA_CONFIG, CERT_CONFIG     JSON documents
    """

    def __init__(
        self,
        binary: Optional[str] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.binary = binary or settings.CERT_MANAGER_BINARY
        self._runner = runner
        self._clock = clock

    def _run(self, mode: str, target: str, env: Dict[str, str]) -> str:
        full_env = {
            **os.environ,
            "MANAGER_MODE": mode,
            "MANAGER_TARGET": target,
            **env,
        }
        logger.debug(f"Running cert manager mode={mode} target={target}")
        try:
            cp = self._runner(
                [self.binary],
                env=full_env,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as e:
            raise ConfigError(f"Certificate manager '{self.binary}' not found") from e

        if cp.returncode != 0:
            # stderr never contains key material; stdout does
            raise ProvisioningError(
                f"Certificate manager failed (mode={mode}, target={target})",
                command=self.binary,
                exit_code=cp.returncode,
                stderr=cp.stderr or "",
            )
        return (cp.stdout or "").strip()

    # === CA ===

    def create_ca(self, name: str) -> Identity:
        """
        Fresh self-signed CA with a fixed validity window
        The window opens a few minutes in the past to tolerate clock skew
        """
        now = self._clock()
        not_before = isoformat(now - timedelta(minutes=settings.CA_CLOCK_SKEW_MINUTES))
        not_after = isoformat(now + timedelta(days=settings.CA_VALIDITY_DAYS))

        private_key = self._run("ca", "key", {})
        certificate = self._run("ca", "cert", {
            "CA_KEY": private_key,
            "CA_CONFIG": json.dumps({
                "name": name,
                "validNotBefore": not_before,
                "validNotAfter": not_after,
            }),
        })
        logger.info(f"Issued CA '{name}' valid {not_before} .. {not_after}")
        return Identity(private_key, certificate, not_before, not_after)

    # === Endpoints ===

    def issue_endpoint(
        self,
        ca_key: str,
        ca_cert: str,
        ca_not_after: str,
        hostname: str,
        network: str,
        groups: List[str],
    ) -> Identity:
        """
        Fresh keypair and certificate signed by the given CA

        Args:
            hostname: Fully qualified overlay name embedded in the certificate
            network: Overlay address with prefix (e.g., "10.0.1.2/24")
            groups: Groups embedded for mesh-side authorization
        """
        now = self._clock()
        not_before = isoformat(now - timedelta(minutes=settings.CA_CLOCK_SKEW_MINUTES))
        requested = now + timedelta(days=settings.ENDPOINT_CERT_VALIDITY_DAYS)
        # A leaf may not outlive its signing CA
        not_after = isoformat(min(requested, parse_isoformat(ca_not_after)))

        private_key = self._run("host", "key", {"CA_KEY": ca_key})
        certificate = self._run("host", "cert", {
            "CA_KEY": ca_key,
            "CA_CERT": ca_cert,
            "HOST_KEY": private_key,
            "CERT_CONFIG": json.dumps({
                "hostname": hostname,
                "network": network,
                "groups": list(groups),
                "validNotBefore": not_before,
                "validNotAfter": not_after,
            }),
        })
        logger.info(f"Issued certificate for {hostname} ({network}, groups={list(groups)})")
        return Identity(private_key, certificate, not_before, not_after)


# Singleton instance
cert_manager = CertManager()
