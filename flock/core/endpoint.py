# flock/core/endpoint.py
"""
Endpoint Lifecycle

An endpoint is an overlay identity: overlay address, leaf certificate
signed by the network's current CA, groups and firewall policy. Any
change to its network, hostname or groups replaces it completely (new
id, new address, new certificate). The attachment deploys the compiled
agent config to the host the endpoint runs on.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable, Optional, Sequence, Tuple
import logging

from flock.exceptions import FlockError
from flock.schemas.actions import dump_actions, parse_actions
from flock.schemas.connection import SSHConnection
from flock.schemas.firewall import FirewallPolicy
from . import systemd
from .allocator import AllocatorFactory
from .cert_manager import CertManager, cert_manager
from .executor import ActionExecutor, action_executor, fingerprint
from .host import Host
from .nebula_config import Lighthouse, Topology, compile_config, config_path
from .reconciler import Deployment, DiffResult, Ref, diff_keys, new_id

if TYPE_CHECKING:
    from .network import NetworkHandle

logger = logging.getLogger(__name__)


# === Endpoint ===

class EndpointKind:
    """
    Overlay identity

    inputs: name, network_id, prefix_length, domain, ipam_connection,
            hostname, groups, firewall, epoch,
            ca (resource, certificate, not_after, epoch of the current CA)
    outputs: inputs + endpoint_id, overlay_ip, private_key, certificate,
             not_after, signing_epoch

    The CA signing key never enters endpoint state; ca_keys resolves it
    from the CA resource when a certificate is issued.
    """
    name = "endpoint"
    replace_keys = ("network_id", "prefix_length", "domain", "ipam_connection", "hostname", "groups")

    def __init__(
        self,
        allocators: AllocatorFactory,
        ca_keys: Callable[[str], str],
        certs: Optional[CertManager] = None,
    ):
        self.allocators = allocators
        self.ca_keys = ca_keys
        self.certs = certs or cert_manager

    def create(self, inputs: dict) -> Tuple[str, dict]:
        return self._issue(inputs)

    def create_replacement(self, inputs: dict, previous: dict) -> Tuple[str, dict]:
        """A replacement never inherits its predecessor's address while another is free"""
        avoid = []
        if previous.get("network_id") == inputs["network_id"] and previous.get("overlay_ip"):
            avoid.append(previous["overlay_ip"])
        return self._issue(inputs, avoid=avoid)

    def _issue(self, inputs: dict, avoid: Sequence[str] = ()) -> Tuple[str, dict]:
        endpoint_id = new_id()
        network_id = inputs["network_id"]
        allocator = self.allocators(inputs.get("ipam_connection"))
        overlay_ip = allocator.allocate_address(network_id, endpoint_id, avoid=avoid)

        ca = inputs["ca"]
        fqdn = f"{inputs['hostname']}.{inputs['domain']}"
        try:
            identity = self.certs.issue_endpoint(
                ca_key=self.ca_keys(ca["resource"]),
                ca_cert=ca["certificate"],
                ca_not_after=ca["not_after"],
                hostname=fqdn,
                network=f"{overlay_ip}/{inputs['prefix_length']}",
                groups=inputs["groups"],
            )
        except FlockError:
            allocator.free_address(network_id, endpoint_id)
            raise

        logger.info(f"Endpoint {fqdn} created with {overlay_ip} (epoch {ca['epoch']})")
        return endpoint_id, {
            **inputs,
            "endpoint_id": endpoint_id,
            "overlay_ip": overlay_ip,
            "private_key": identity.private_key,
            "certificate": identity.certificate,
            "not_after": identity.not_after,
            "signing_epoch": ca["epoch"],
        }

    def diff(self, resource_id: str, old_outputs: dict, new_inputs: dict) -> DiffResult:
        result = diff_keys(old_outputs, new_inputs, self.replace_keys)

        signing_epoch = old_outputs.get("signing_epoch")
        epoch = new_inputs.get("epoch")
        # Only CA(E-1) and CA(E) are trusted; this covers lowered epochs too
        if signing_epoch is not None and epoch is not None and signing_epoch not in (epoch - 1, epoch):
            logger.warning(
                f"Endpoint {old_outputs.get('hostname')} is signed by epoch {signing_epoch}, "
                f"which is not trusted at epoch {epoch}; reissuing"
            )
            result.replace_keys.append("signing_epoch")
            result.changed = True
        return result

    def delete(self, resource_id: str, outputs: dict) -> None:
        # No revocation: the certificate ages out with its CA
        self.allocators(outputs.get("ipam_connection")).free_address(outputs["network_id"], outputs["endpoint_id"])

    def seed(self, resource_id: str, outputs: dict) -> None:
        self.allocators(outputs.get("ipam_connection")).reserve_address(
            outputs["network_id"], outputs["endpoint_id"], outputs["overlay_ip"]
        )


# === Attachment ===

def build_attachment(inputs: dict) -> dict:
    """Compile the config and the action list that deploys it"""
    endpoint = inputs["endpoint"]
    topology_inputs = inputs["topology"]
    topology = Topology(
        network_id=topology_inputs["network_id"],
        domain=topology_inputs["domain"],
        ca_certificates=list(topology_inputs["ca_certificates"]),
        lighthouses=[Lighthouse.from_dict(lh) for lh in topology_inputs["lighthouses"]],
    )
    config = compile_config(endpoint, topology, inputs["is_lighthouse"], inputs["underlay_port"])
    rendered = config.render()

    path = config_path(topology.network_id, endpoint["hostname"])
    unit = systemd.unit_name(topology.network_id[:8], endpoint["hostname"])
    unit_content = systemd.nebula_unit(f"Flock mesh agent {endpoint['hostname']}.{topology.domain}", path)
    actions = systemd.service_actions(unit, unit_content, files=[(rendered, path)])

    return {
        "config_path": path,
        "unit": unit,
        "fingerprint": fingerprint(rendered, unit_content),
        "actions": dump_actions(actions),
    }


class AttachmentKind:
    """
    Mesh agent deployment for one endpoint on one host

    Replaced whenever the compiled config or unit changes, which covers
    firewall, lighthouse and CA bundle changes.
    """
    name = "nebula-attachment"

    def __init__(self, executor: Optional[ActionExecutor] = None):
        self.executor = executor or action_executor

    def create(self, inputs: dict) -> Tuple[str, dict]:
        built = build_attachment(inputs)
        connection = SSHConnection.parse(inputs["connection"])
        self.executor.apply(connection, parse_actions(built["actions"]), resource=built["unit"])
        logger.info(f"Attached {built['unit']} on {connection.host}")
        return new_id(), {**inputs, **built}

    def diff(self, resource_id: str, old_outputs: dict, new_inputs: dict) -> DiffResult:
        result = diff_keys(old_outputs, new_inputs, ("connection",))
        if build_attachment(new_inputs)["fingerprint"] != old_outputs.get("fingerprint"):
            result.replace_keys.append("config")
            result.changed = True
        return result

    def delete(self, resource_id: str, outputs: dict) -> None:
        self.executor.teardown(outputs["connection"], parse_actions(outputs["actions"]), resource=outputs.get("unit"))


# === Declaration ===

@dataclass
class EndpointHandle:
    name: str
    hostname: str
    host: Host
    endpoint: Ref
    port: Ref


def declare_endpoint(
    deployment: Deployment,
    network: "NetworkHandle",
    host: Host,
    name: str,
    hostname: str,
    groups: Iterable[str],
    firewall: FirewallPolicy,
) -> EndpointHandle:
    """Declare an endpoint and its underlay port on a host"""
    start_port, end_port = network.port_range
    scope = host.port_scope(start_port, end_port, network.ipam_connection)

    port = deployment.add(
        f"{network.name}-{name}-port",
        "ipam-port",
        {
            "endpoint": name,
            "host_id": Ref(scope.resource, "host_id"),
            "ipam_connection": network.ipam_connection,
        },
    )
    endpoint = deployment.add(
        f"{network.name}-{name}",
        "endpoint",
        {
            "name": name,
            "network_id": network.network_id,
            "prefix_length": network.prefix_length,
            "domain": network.domain,
            "ipam_connection": network.ipam_connection,
            "hostname": hostname,
            "groups": sorted(set(groups)),
            "firewall": firewall.with_lighthouse_dns().model_dump(),
            "ca": network.signing_ca(),
            "epoch": network.epoch,
        },
    )
    return EndpointHandle(name=name, hostname=hostname, host=host, endpoint=endpoint, port=port)


def attach(deployment: Deployment, network: "NetworkHandle", handle: EndpointHandle, is_lighthouse: bool = False) -> Ref:
    """Deploy the endpoint's compiled config to its host"""
    return deployment.add(
        f"{network.name}-{handle.name}-attachment",
        "nebula-attachment",
        {
            "connection": handle.host.connection.model_dump(),
            "endpoint": handle.endpoint,
            "topology": network.topology(),
            "is_lighthouse": is_lighthouse,
            "underlay_port": Ref(handle.port.resource, "port"),
        },
        depends_on=[handle.host.base().resource],
    )
