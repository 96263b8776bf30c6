# flock/schemas/__init__.py
"""
Pydantic Schemas for the Flock control plane
Organized by domain: declarations, actions, firewall, agent config, resources
"""

from .base import ErrorResponse, HealthResponse
from .connection import SSHConnection
from .actions import Action, CommandAction, UploadAction, parse_actions, dump_actions
from .firewall import (
    HostRule,
    GroupRule,
    FirewallRule,
    FirewallPolicy,
)
from .nebula import NebulaConfig, NebulaFirewallRule
from .declaration import (
    HostDeclaration,
    NetworkDeclaration,
    EndpointDeclaration,
    Declaration,
)
from .resource import (
    ResourceStateResponse,
    ResourceListResponse,
    ApplyResponse,
    DestroyResponse,
    IPAMStatsResponse,
)

__all__ = [
    # Base
    "ErrorResponse",
    "HealthResponse",
    # Remote execution
    "SSHConnection",
    "Action",
    "CommandAction",
    "UploadAction",
    "parse_actions",
    "dump_actions",
    # Firewall
    "HostRule",
    "GroupRule",
    "FirewallRule",
    "FirewallPolicy",
    # Agent config
    "NebulaConfig",
    "NebulaFirewallRule",
    # Declarations
    "HostDeclaration",
    "NetworkDeclaration",
    "EndpointDeclaration",
    "Declaration",
    # Resources
    "ResourceStateResponse",
    "ResourceListResponse",
    "ApplyResponse",
    "DestroyResponse",
    "IPAMStatsResponse",
]
