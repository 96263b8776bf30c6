# flock/core/network.py
"""
Networks: IPAM scopes, CA epochs and lighthouses

A network at epoch E holds exactly two CA generations, CA(E-1) and
CA(E). Each generation is its own resource named <network>-ca-epoch-<n>,
so bumping E creates the new CA, keeps the previous one untouched and
drops CA(E-2) because it is no longer declared.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from flock.database.models import ResourceState
from flock.exceptions import ValidationError
from flock.schemas.declaration import NetworkDeclaration
from flock.schemas.firewall import DNS_PORT, LIGHTHOUSE_GROUP, FirewallPolicy, HostRule
from .allocator import AllocatorFactory
from .cert_manager import CertManager, cert_manager
from .endpoint import attach, declare_endpoint
from .reconciler import Deployment, DiffResult, Ref, diff_keys, new_id

logger = logging.getLogger(__name__)


def ca_resource_name(network: str, epoch: int) -> str:
    return f"{network}-ca-epoch-{epoch}"


def lighthouse_hostname(index: int) -> str:
    return f"lighthouse{index}"


# === Resource kinds ===

class CAKind:
    """Self-signed CA for one epoch of one network"""
    name = "ca"
    replace_keys = ("network", "epoch")

    def __init__(self, certs: Optional[CertManager] = None):
        self.certs = certs or cert_manager

    def create(self, inputs: dict) -> Tuple[str, dict]:
        ca_name = ca_resource_name(inputs["network"], inputs["epoch"])
        identity = self.certs.create_ca(ca_name)
        return new_id(), {**inputs, "name": ca_name, **identity.to_dict()}

    def diff(self, resource_id: str, old_outputs: dict, new_inputs: dict) -> DiffResult:
        return diff_keys(old_outputs, new_inputs, self.replace_keys)

    def delete(self, resource_id: str, outputs: dict) -> None:
        # Certificates it signed become untrusted once no host bundles it
        logger.info(f"Retired CA {outputs.get('name', resource_id)}")


class RecordedCAKeys:
    """Looks up a CA signing key in the recorded state of its resource"""

    def __init__(self, db: Session):
        self.db = db

    def __call__(self, resource_name: str) -> str:
        state = self.db.query(ResourceState).filter(
            ResourceState.name == resource_name,
            ResourceState.kind == CAKind.name,
        ).first()
        if state is None:
            raise ValidationError(f"CA {resource_name} has not been created")
        return state.outputs["private_key"]


class IPAMNetworkKind:
    """Address scope of one network"""
    name = "ipam-network"
    replace_keys = ("cidr", "ipam_connection")

    def __init__(self, allocators: AllocatorFactory):
        self.allocators = allocators

    def create(self, inputs: dict) -> Tuple[str, dict]:
        network_id = new_id()
        self.allocators(inputs.get("ipam_connection")).create_network(network_id, inputs["cidr"])
        prefix_length = ipaddress.IPv4Network(inputs["cidr"]).prefixlen
        return network_id, {**inputs, "network_id": network_id, "prefix_length": prefix_length}

    def diff(self, resource_id: str, old_outputs: dict, new_inputs: dict) -> DiffResult:
        return diff_keys(old_outputs, new_inputs, self.replace_keys)

    def delete(self, resource_id: str, outputs: dict) -> None:
        self.allocators(outputs.get("ipam_connection")).destroy_network(outputs["network_id"])

    def seed(self, resource_id: str, outputs: dict) -> None:
        self.allocators(outputs.get("ipam_connection")).create_network(outputs["network_id"], outputs["cidr"])


class IPAMHostKind:
    """Underlay port scope of one host"""
    name = "ipam-host"
    replace_keys = ("start_port", "end_port", "ipam_connection")

    def __init__(self, allocators: AllocatorFactory):
        self.allocators = allocators

    def create(self, inputs: dict) -> Tuple[str, dict]:
        host_id = new_id()
        self.allocators(inputs.get("ipam_connection")).create_host(host_id, inputs["start_port"], inputs["end_port"])
        return host_id, {**inputs, "host_id": host_id}

    def diff(self, resource_id: str, old_outputs: dict, new_inputs: dict) -> DiffResult:
        return diff_keys(old_outputs, new_inputs, self.replace_keys)

    def delete(self, resource_id: str, outputs: dict) -> None:
        self.allocators(outputs.get("ipam_connection")).delete_host(outputs["host_id"])

    def seed(self, resource_id: str, outputs: dict) -> None:
        self.allocators(outputs.get("ipam_connection")).create_host(
            outputs["host_id"], outputs["start_port"], outputs["end_port"]
        )


class IPAMPortKind:
    """One underlay port allocation"""
    name = "ipam-port"
    replace_keys = ("host_id", "ipam_connection")

    def __init__(self, allocators: AllocatorFactory):
        self.allocators = allocators

    def create(self, inputs: dict) -> Tuple[str, dict]:
        port_id = new_id()
        port = self.allocators(inputs.get("ipam_connection")).allocate_port(inputs["host_id"], port_id)
        return port_id, {**inputs, "port_id": port_id, "port": port}

    def diff(self, resource_id: str, old_outputs: dict, new_inputs: dict) -> DiffResult:
        return diff_keys(old_outputs, new_inputs, self.replace_keys)

    def delete(self, resource_id: str, outputs: dict) -> None:
        self.allocators(outputs.get("ipam_connection")).free_port(outputs["host_id"], outputs["port_id"])

    def seed(self, resource_id: str, outputs: dict) -> None:
        self.allocators(outputs.get("ipam_connection")).reserve_port(
            outputs["host_id"], outputs["port_id"], outputs["port"]
        )


# === Declaration ===

@dataclass
class NetworkHandle:
    """References to a declared network's resources"""
    name: str
    domain: str
    epoch: int
    port_range: Tuple[int, int]
    ipam_connection: Optional[dict]
    ipam: Ref
    current_ca: Ref
    previous_ca: Ref
    lighthouses: List[dict] = field(default_factory=list)

    @property
    def network_id(self) -> Ref:
        return Ref(self.ipam.resource, "network_id")

    @property
    def prefix_length(self) -> Ref:
        return Ref(self.ipam.resource, "prefix_length")

    def signing_ca(self) -> dict:
        """Public half of the current CA; the key is looked up at issuance"""
        return {
            "resource": self.current_ca.resource,
            "certificate": Ref(self.current_ca.resource, "certificate"),
            "not_after": Ref(self.current_ca.resource, "not_after"),
            "epoch": self.epoch,
        }

    def topology(self) -> dict:
        """Topology inputs for the config compiler; trusted CAs current first"""
        return {
            "network_id": self.network_id,
            "domain": self.domain,
            "ca_certificates": [
                Ref(self.current_ca.resource, "certificate"),
                Ref(self.previous_ca.resource, "certificate"),
            ],
            "lighthouses": list(self.lighthouses),
        }


def lighthouse_firewall() -> FirewallPolicy:
    """Lighthouses answer DNS queries from any endpoint"""
    return FirewallPolicy(inbound=[HostRule(host="any", port=DNS_PORT)])


def declare_network(deployment: Deployment, declaration: NetworkDeclaration, hosts: Dict, ipam_connection: Optional[dict]) -> NetworkHandle:
    """
    Declare a network's scope, CA pair and lighthouses

    Args:
        deployment: Graph to add resources to
        declaration: Network declaration
        hosts: Host objects by name
        ipam_connection: Connection of the remote allocator, None for local

    Returns:
        NetworkHandle for declaring endpoints on this network
    """
    name = declaration.name
    epoch = declaration.epoch

    ipam = deployment.add(
        f"{name}-ipam",
        "ipam-network",
        {"network": name, "cidr": declaration.ip_range, "ipam_connection": ipam_connection},
    )
    previous_ca = deployment.add(ca_resource_name(name, epoch - 1), "ca", {"network": name, "epoch": epoch - 1})
    current_ca = deployment.add(ca_resource_name(name, epoch), "ca", {"network": name, "epoch": epoch})

    network = NetworkHandle(
        name=name,
        domain=declaration.domain,
        epoch=epoch,
        port_range=tuple(declaration.underlay_port_range),
        ipam_connection=ipam_connection,
        ipam=ipam,
        current_ca=current_ca,
        previous_ca=previous_ca,
    )

    handles = []
    for index, host_name in enumerate(declaration.lighthouses):
        host = hosts[host_name]
        hostname = lighthouse_hostname(index)
        handle = declare_endpoint(
            deployment,
            network,
            host,
            name=hostname,
            hostname=hostname,
            groups=[LIGHTHOUSE_GROUP],
            firewall=lighthouse_firewall(),
        )
        handles.append(handle)
        network.lighthouses.append({
            "overlay_ip": Ref(handle.endpoint.resource, "overlay_ip"),
            "underlay_host": host.connection.host,
            "underlay_port": Ref(handle.port.resource, "port"),
        })

    for handle in handles:
        attach(deployment, network, handle, is_lighthouse=True)

    logger.debug(f"Declared network {name} at epoch {epoch} with {len(handles)} lighthouse(s)")
    return network
