# flock/core/allocator.py
"""
Allocator clients

LocalAllocator talks to the control plane database directly.
RemoteAllocator runs `flock-ipam` on an IPAM host over SSH; that host's
database is then the single serializer for every run using it.
"""

import shlex
import logging
from typing import Any, Dict, Optional, Sequence

from sqlalchemy.orm import Session

from flock.config import settings
from flock.exceptions import ExhaustionError, ProvisioningError, ValidationError
from flock.schemas.connection import SSHConnection
from . import ssh
from .ipam import ipam_service

logger = logging.getLogger(__name__)

# flock-ipam exit codes
EXIT_EXHAUSTED = 2
EXIT_INVALID = 3


class LocalAllocator:
    """Allocator bound to a database session"""

    def __init__(self, db: Session):
        self.db = db

    def create_network(self, network_id: str, cidr: str) -> None:
        ipam_service.create_network(self.db, network_id, cidr)

    def destroy_network(self, network_id: str) -> None:
        ipam_service.destroy_network(self.db, network_id)

    def allocate_address(self, network_id: str, address_id: str, avoid: Sequence[str] = ()) -> str:
        return ipam_service.allocate_address(self.db, network_id, address_id, avoid=avoid)

    def free_address(self, network_id: str, address_id: str) -> None:
        ipam_service.free_address(self.db, network_id, address_id)

    def reserve_address(self, network_id: str, address_id: str, address: str) -> None:
        ipam_service.reserve_address(self.db, network_id, address_id, address)

    def create_host(self, host_id: str, start_port: int, end_port: int) -> None:
        ipam_service.create_host(self.db, host_id, start_port, end_port)

    def delete_host(self, host_id: str) -> None:
        ipam_service.delete_host(self.db, host_id)

    def allocate_port(self, host_id: str, port_id: str) -> int:
        return ipam_service.allocate_port(self.db, host_id, port_id)

    def free_port(self, host_id: str, port_id: str) -> None:
        ipam_service.free_port(self.db, host_id, port_id)

    def reserve_port(self, host_id: str, port_id: str, port: int) -> None:
        ipam_service.reserve_port(self.db, host_id, port_id, port)


class RemoteAllocator:
    """Allocator speaking the flock-ipam positional-argument protocol over SSH"""

    def __init__(self, connection: SSHConnection, connector=ssh.connect, command: Optional[str] = None):
        self.connection = SSHConnection.parse(connection)
        self._connect = connector
        self.command = command or settings.IPAM_REMOTE_COMMAND

    def _call(self, *args: Any) -> str:
        line = " ".join([self.command] + [shlex.quote(str(a)) for a in args])
        with self._connect(self.connection) as session:
            result = session.run(line)

        if result.exit_code == EXIT_EXHAUSTED:
            raise ExhaustionError(result.stderr.strip())
        if result.exit_code == EXIT_INVALID:
            raise ValidationError(result.stderr.strip())
        if not result.ok:
            raise ProvisioningError(
                f"IPAM command '{args[0]}' failed on {self.connection.host}",
                command=line,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result.stdout.strip()

    def create_network(self, network_id: str, cidr: str) -> None:
        self._call("create-network", network_id, cidr)

    def destroy_network(self, network_id: str) -> None:
        self._call("destroy-network", network_id)

    def allocate_address(self, network_id: str, address_id: str, avoid: Sequence[str] = ()) -> str:
        return self._call("allocate-address", network_id, address_id, *avoid)

    def free_address(self, network_id: str, address_id: str) -> None:
        self._call("free-address", network_id, address_id)

    def reserve_address(self, network_id: str, address_id: str, address: str) -> None:
        self._call("reserve-address", network_id, address_id, address)

    def create_host(self, host_id: str, start_port: int, end_port: int) -> None:
        self._call("create-host", host_id, start_port, end_port)

    def delete_host(self, host_id: str) -> None:
        self._call("delete-host", host_id)

    def allocate_port(self, host_id: str, port_id: str) -> int:
        output = self._call("allocate-port", host_id, port_id)
        try:
            return int(output)
        except ValueError as e:
            raise ProvisioningError(f"Unexpected allocate-port output: {output!r}") from e

    def free_port(self, host_id: str, port_id: str) -> None:
        self._call("free-port", host_id, port_id)

    def reserve_port(self, host_id: str, port_id: str, port: int) -> None:
        self._call("reserve-port", host_id, port_id, port)


class AllocatorFactory:
    """
    Picks the allocator recorded in a resource's inputs
    `ipam_connection` absent/None means local
    """

    def __init__(self, db: Session, connector=ssh.connect):
        self.db = db
        self._connector = connector
        self._remote: Dict[str, RemoteAllocator] = {}

    def __call__(self, ipam_connection: Optional[dict]):
        if not ipam_connection:
            return LocalAllocator(self.db)
        connection = SSHConnection.parse(ipam_connection)
        key = str(connection)
        if key not in self._remote:
            self._remote[key] = RemoteAllocator(connection, connector=self._connector)
        return self._remote[key]
