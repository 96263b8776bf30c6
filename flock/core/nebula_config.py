# flock/core/nebula_config.py
"""
Nebula Config Compiler
Compiles an endpoint, its firewall policy and the network topology into
a concrete mesh agent configuration. Pure: no I/O, no allocation.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Union
import logging

from flock.config import settings
from flock.schemas.firewall import DNS_PORT, FirewallPolicy, FirewallRule, HostRule
from flock.schemas.nebula import (
    DnsConfig,
    FirewallConfig,
    LighthouseConfig,
    ListenConfig,
    NebulaConfig,
    NebulaFirewallRule,
    PkiConfig,
    TunConfig,
)

logger = logging.getLogger(__name__)

INTERFACE_PREFIX = "nb"


@dataclass(frozen=True)
class Lighthouse:
    """A lighthouse as seen by other endpoints"""
    overlay_ip: str
    underlay_host: str
    underlay_port: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lighthouse":
        return cls(
            overlay_ip=data["overlay_ip"],
            underlay_host=data["underlay_host"],
            underlay_port=int(data["underlay_port"]),
        )


@dataclass
class Topology:
    """Network-wide inputs shared by every endpoint's config"""
    network_id: str
    domain: str
    ca_certificates: List[str]
    lighthouses: List[Lighthouse] = field(default_factory=list)


def interface_name(network_id: str, hostname: str) -> str:
    """
    Tunnel device name, unique per (network, endpoint) on a host.
    Linux caps interface names at 15 characters.
    """
    net = network_id.replace("-", "")[:5]
    host = hostname.replace("-", "").replace(".", "")[:8]
    return f"{INTERFACE_PREFIX}{net}{host}"


def config_path(network_id: str, hostname: str) -> str:
    return f"{settings.REMOTE_CONFIG_DIR}/{network_id}/{hostname}.json"


def compile_rule(rule: FirewallRule, domain: str) -> NebulaFirewallRule:
    if isinstance(rule, HostRule):
        host = rule.host if rule.host == "any" else f"{rule.host}.{domain}"
        return NebulaFirewallRule(port=rule.port, proto=rule.proto or "any", host=host)
    return NebulaFirewallRule(port=rule.port, proto=rule.proto or "any", groups=list(rule.groups))


def compile_firewall(policy: FirewallPolicy, domain: str) -> FirewallConfig:
    return FirewallConfig(
        outbound=[compile_rule(r, domain) for r in policy.outbound],
        inbound=[compile_rule(r, domain) for r in policy.inbound],
    )


def compile_config(
    endpoint: Dict[str, Any],
    topology: Topology,
    is_lighthouse: bool,
    underlay_port: int,
) -> NebulaConfig:
    """
    Build the agent configuration for one endpoint

    Args:
        endpoint: Endpoint outputs (overlay_ip, hostname, certificate,
            private_key, firewall)
        topology: Network id, DNS domain, trusted CA certificates
            (current first) and lighthouses
        is_lighthouse: Whether this endpoint serves as a lighthouse
        underlay_port: UDP port the agent listens on

    Returns:
        NebulaConfig
    """
    overlay_ip = endpoint["overlay_ip"]
    policy: Union[FirewallPolicy, dict] = endpoint.get("firewall") or {}
    if not isinstance(policy, FirewallPolicy):
        policy = FirewallPolicy.model_validate(policy)
    policy = policy.with_lighthouse_dns()

    if is_lighthouse:
        static_host_map: Dict[str, List[str]] = {}
        lighthouse = LighthouseConfig(
            am_lighthouse=True,
            hosts=[],
            serve_dns=True,
            dns=DnsConfig(host=overlay_ip, port=DNS_PORT),
        )
    else:
        static_host_map = {
            lh.overlay_ip: [f"{lh.underlay_host}:{lh.underlay_port}"]
            for lh in topology.lighthouses
        }
        lighthouse = LighthouseConfig(
            am_lighthouse=False,
            hosts=[lh.overlay_ip for lh in topology.lighthouses],
            serve_dns=False,
        )

    config = NebulaConfig(
        pki=PkiConfig(
            ca="".join(_pem(c) for c in topology.ca_certificates),
            cert=endpoint["certificate"],
            key=endpoint["private_key"],
        ),
        static_host_map=static_host_map,
        lighthouse=lighthouse,
        listen=ListenConfig(host="::", port=underlay_port),
        tun=TunConfig(dev=interface_name(topology.network_id, endpoint["hostname"])),
        firewall=compile_firewall(policy, topology.domain),
    )

    logger.debug(
        f"Compiled config for {endpoint['hostname']}: "
        f"{len(config.firewall.inbound)} inbound / {len(config.firewall.outbound)} outbound rules"
    )
    return config


def _pem(block: str) -> str:
    return block if block.endswith("\n") else block + "\n"
