# flock/schemas/declaration.py
"""
Declaration schemas: the desired state an operator applies
"""

from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from typing import List, Optional, Tuple
import ipaddress
import re

from flock.config import settings
from .connection import SSHConnection
from .firewall import FirewallPolicy

NAME_PATTERN = r'^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?$'
LIGHTHOUSE_PATTERN = r'^lighthouse\d+$'


def validate_label(v: str) -> str:
    """
    Validate a DNS label (RFC 1123)
    - Lowercase alphanumeric with hyphens
    - Cannot start or end with hyphen
    """
    v = v.lower().strip()
    if not re.match(NAME_PATTERN, v):
        raise ValueError(
            'Name must be lowercase alphanumeric with optional hyphens, '
            'cannot start/end with hyphen, max 63 chars'
        )
    return v


class HostDeclaration(BaseModel):
    """A physical machine reachable over SSH"""
    name: str = Field(..., examples=["host1"])
    connection: SSHConnection

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_label(v)


class NetworkDeclaration(BaseModel):
    """An overlay network and its lighthouses"""
    name: str = Field(..., examples=["mesh"])
    epoch: int = Field(
        ...,
        ge=1,
        description="Current CA epoch; increment by one to rotate CAs",
        examples=[1]
    )
    ip_range: str = Field(..., description="IPv4 CIDR of the overlay", examples=["10.0.1.0/24"])
    domain: str = Field(default_factory=lambda: settings.DEFAULT_DNS_DOMAIN)
    lighthouses: List[str] = Field(..., min_length=1, description="Names of lighthouse hosts")
    underlay_port_range: Tuple[int, int] = Field(
        default_factory=lambda: settings.default_underlay_port_range,
        description="Underlay ports available to endpoints (start inclusive, end exclusive)"
    )
    ipam_host: Optional[str] = Field(
        None,
        description="Host running flock-ipam; allocation is local to the control plane when unset"
    )

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_label(v)

    @field_validator('ip_range')
    @classmethod
    def validate_ip_range(cls, v: str) -> str:
        network = ipaddress.IPv4Network(v.strip(), strict=False)
        if network.prefixlen > 30:
            raise ValueError("prefix must be /30 or shorter to leave usable host addresses")
        return str(network)

    @field_validator('underlay_port_range')
    @classmethod
    def validate_port_range(cls, v: Tuple[int, int]) -> Tuple[int, int]:
        start, end = v
        if not (1 <= start < end <= 65536):
            raise ValueError("port range must satisfy 1 <= start < end <= 65536")
        return v

    @property
    def prefix_length(self) -> int:
        return ipaddress.IPv4Network(self.ip_range).prefixlen


class EndpointDeclaration(BaseModel):
    """One overlay identity running on a host"""
    name: str = Field(..., examples=["backend"])
    network: str
    host: str
    hostname: str = Field(..., description="Overlay hostname label", examples=["backend"])
    groups: List[str] = Field(default_factory=list, examples=[["app"]])
    firewall: FirewallPolicy = Field(default_factory=FirewallPolicy)

    @field_validator('name', 'hostname')
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_label(v)

    @field_validator('groups')
    @classmethod
    def normalize_groups(cls, v: List[str]) -> List[str]:
        return sorted({g.strip() for g in v if g.strip()})


class Declaration(BaseModel):
    """Complete desired state for one deployment"""
    hosts: List[HostDeclaration] = Field(default_factory=list)
    networks: List[NetworkDeclaration] = Field(default_factory=list)
    endpoints: List[EndpointDeclaration] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "hosts": [
                    {"name": "host1", "connection": {"host": "203.0.113.10", "user": "root"}},
                    {"name": "host2", "connection": {"host": "203.0.113.11", "user": "root"}},
                ],
                "networks": [
                    {"name": "mesh", "epoch": 1, "ip_range": "10.0.1.0/24", "lighthouses": ["host1"]}
                ],
                "endpoints": [
                    {
                        "name": "backend",
                        "network": "mesh",
                        "host": "host2",
                        "hostname": "backend",
                        "groups": ["app"],
                        "firewall": {"inbound": [{"host": "any", "port": 80}], "outbound": []},
                    }
                ],
            }
        }
    )

    @model_validator(mode="after")
    def check_references(self) -> "Declaration":
        host_names = [h.name for h in self.hosts]
        network_names = [n.name for n in self.networks]
        endpoint_names = [e.name for e in self.endpoints]

        for kind, names in (("host", host_names), ("network", network_names), ("endpoint", endpoint_names)):
            duplicates = {n for n in names if names.count(n) > 1}
            if duplicates:
                raise ValueError(f"Duplicate {kind} names: {sorted(duplicates)}")

        for network in self.networks:
            for lighthouse in network.lighthouses:
                if lighthouse not in host_names:
                    raise ValueError(f"Network {network.name}: unknown lighthouse host '{lighthouse}'")
            if network.ipam_host and network.ipam_host not in host_names:
                raise ValueError(f"Network {network.name}: unknown ipam host '{network.ipam_host}'")

        for endpoint in self.endpoints:
            if endpoint.network not in network_names:
                raise ValueError(f"Endpoint {endpoint.name}: unknown network '{endpoint.network}'")
            if endpoint.host not in host_names:
                raise ValueError(f"Endpoint {endpoint.name}: unknown host '{endpoint.host}'")

        for endpoint in self.endpoints:
            if re.match(LIGHTHOUSE_PATTERN, endpoint.hostname) or re.match(LIGHTHOUSE_PATTERN, endpoint.name):
                raise ValueError(f"Endpoint {endpoint.name}: names matching 'lighthouse<N>' are reserved")

        hostnames = [(e.network, e.hostname) for e in self.endpoints]
        if len(hostnames) != len(set(hostnames)):
            raise ValueError("Endpoint hostnames must be unique within a network")

        for host_name in host_names:
            users = [n for n in self.networks if host_name in self.hosts_of(n.name)]
            scopes = {(tuple(n.underlay_port_range), n.ipam_host) for n in users}
            if len(scopes) > 1:
                raise ValueError(
                    f"Host {host_name}: networks {sorted(n.name for n in users)} share its underlay ports "
                    f"and must declare the same underlay_port_range and ipam_host"
                )

        owners = {}
        for resource, owner in self.resource_names():
            if resource in owners:
                raise ValueError(f"Resource name '{resource}' is produced by both {owners[resource]} and {owner}")
            owners[resource] = owner
        return self

    def hosts_of(self, network: str) -> List[str]:
        """Hosts running an endpoint of the network, lighthouses included"""
        names = list(self.network(network).lighthouses)
        names.extend(e.host for e in self.endpoints if e.network == network)
        return sorted(set(names))

    def resource_names(self):
        """(resource name, owner) for every resource this declaration produces"""
        for host in self.hosts:
            yield f"{host.name}-setup-base", f"host {host.name}"
            yield f"{host.name}-ports", f"host {host.name}"
        for network in self.networks:
            owner = f"network {network.name}"
            yield f"{network.name}-ipam", owner
            for epoch in (network.epoch - 1, network.epoch):
                yield f"{network.name}-ca-epoch-{epoch}", owner
            for index in range(len(network.lighthouses)):
                for suffix in ("", "-port", "-attachment"):
                    yield f"{network.name}-lighthouse{index}{suffix}", owner
        for endpoint in self.endpoints:
            owner = f"endpoint {endpoint.name}"
            for suffix in ("", "-port", "-attachment"):
                yield f"{endpoint.network}-{endpoint.name}{suffix}", owner

    def host(self, name: str) -> HostDeclaration:
        return next(h for h in self.hosts if h.name == name)

    def network(self, name: str) -> NetworkDeclaration:
        return next(n for n in self.networks if n.name == name)
