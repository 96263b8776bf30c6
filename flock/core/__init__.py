"""
Core business logic modules
"""

from .ipam import ipam_service, IPAMService
from .allocator import LocalAllocator, RemoteAllocator, AllocatorFactory
from .cert_manager import cert_manager, CertManager, Identity
from .executor import action_executor, ActionExecutor, RemoteActionsKind
from .reconciler import Reconciler, Deployment, DiffResult, Ref, ApplyReport
from .nebula_config import compile_config, interface_name, Topology, Lighthouse
from .host import Host
from .network import CAKind, IPAMNetworkKind, IPAMHostKind, IPAMPortKind, RecordedCAKeys, declare_network
from .endpoint import EndpointKind, AttachmentKind, declare_endpoint, attach
from .deployment import deployment_service, DeploymentService, build_deployment, resource_kinds

__all__ = [
    # IPAM
    "ipam_service",
    "IPAMService",
    "LocalAllocator",
    "RemoteAllocator",
    "AllocatorFactory",
    # Certificates
    "cert_manager",
    "CertManager",
    "Identity",
    # Execution
    "action_executor",
    "ActionExecutor",
    "RemoteActionsKind",
    # Reconciler
    "Reconciler",
    "Deployment",
    "DiffResult",
    "Ref",
    "ApplyReport",
    # Config compiler
    "compile_config",
    "interface_name",
    "Topology",
    "Lighthouse",
    # Resources
    "Host",
    "CAKind",
    "IPAMNetworkKind",
    "IPAMHostKind",
    "IPAMPortKind",
    "RecordedCAKeys",
    "declare_network",
    "EndpointKind",
    "AttachmentKind",
    "declare_endpoint",
    "attach",
    # Deployment
    "deployment_service",
    "DeploymentService",
    "build_deployment",
    "resource_kinds",
]
