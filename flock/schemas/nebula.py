# flock/schemas/nebula.py
"""
Mesh agent (Nebula) configuration document
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Dict, List, Optional, Union
import json


class PkiConfig(BaseModel):
    """Trusted CA bundle plus this endpoint's certificate and key"""
    ca: str
    cert: str
    key: str


class DnsConfig(BaseModel):
    host: str
    port: int = 53


class LighthouseConfig(BaseModel):
    am_lighthouse: bool
    hosts: List[str] = Field(default_factory=list, description="Overlay IPs of lighthouses")
    serve_dns: bool = False
    dns: Optional[DnsConfig] = None


class ListenConfig(BaseModel):
    host: str = "::"
    port: int


class PunchyConfig(BaseModel):
    punch: bool = True
    respond: bool = True


class TunConfig(BaseModel):
    disabled: bool = False
    dev: str = Field(..., max_length=15)


class NebulaFirewallRule(BaseModel):
    port: Union[int, str]
    proto: str = "any"
    host: Optional[str] = None
    groups: Optional[List[str]] = None


class FirewallConfig(BaseModel):
    outbound: List[NebulaFirewallRule] = Field(default_factory=list)
    inbound: List[NebulaFirewallRule] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    level: str = "info"


class NebulaConfig(BaseModel):
    """
    Complete configuration for one mesh agent instance
    Rendered to JSON (a YAML subset the agent accepts)
    """
    pki: PkiConfig
    static_host_map: Dict[str, List[str]] = Field(default_factory=dict)
    lighthouse: LighthouseConfig
    listen: ListenConfig
    punchy: PunchyConfig = Field(default_factory=PunchyConfig)
    tun: TunConfig
    firewall: FirewallConfig
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(extra="forbid")

    def to_document(self) -> dict:
        return self.model_dump(exclude_none=True)

    def render(self) -> str:
        """Deterministic serialization so identical configs diff as identical"""
        return json.dumps(self.to_document(), sort_keys=True, indent=2) + "\n"
