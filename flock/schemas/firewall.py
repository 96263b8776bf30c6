# flock/schemas/firewall.py
"""
Firewall policy declared on endpoints
"""

from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import List, Literal, Optional, Union

Protocol = Literal["any", "tcp", "udp", "icmp"]
Port = Union[int, Literal["any"]]

LIGHTHOUSE_GROUP = "lighthouses"
DNS_PORT = 53


def check_port(v: Port) -> Port:
    if v == "any":
        return v
    if isinstance(v, bool) or not isinstance(v, int) or not (0 <= v <= 65535):
        raise ValueError("port must be 0-65535 or 'any'")
    return v


class HostRule(BaseModel):
    """Allow traffic to/from a single host, or 'any' host in the network"""
    host: str = Field(..., min_length=1, examples=["backend", "any"])
    port: Port = Field(..., examples=[80, "any"])
    proto: Optional[Protocol] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: Port) -> Port:
        return check_port(v)


class GroupRule(BaseModel):
    """
    Allow traffic to/from endpoints holding ALL of the listed groups
    """
    groups: List[str] = Field(..., min_length=1, examples=[["app"]])
    port: Port = Field(..., examples=[5432])
    proto: Optional[Protocol] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: Port) -> Port:
        return check_port(v)


FirewallRule = Union[HostRule, GroupRule]


class FirewallPolicy(BaseModel):
    """
    Stateful firewall policy. An empty policy denies all traffic;
    response traffic never needs its own rule.
    """
    inbound: List[FirewallRule] = Field(default_factory=list)
    outbound: List[FirewallRule] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")

    def with_lighthouse_dns(self) -> "FirewallPolicy":
        """Policy with outbound DNS to the lighthouses allowed"""
        dns_rule = GroupRule(groups=[LIGHTHOUSE_GROUP], port=DNS_PORT)
        if dns_rule in self.outbound:
            return self
        return FirewallPolicy(inbound=list(self.inbound), outbound=[dns_rule, *self.outbound])
