# flock/core/deployment.py
"""
Deployment Service
Turns a declaration (hosts, networks, endpoints) into a resource graph
and drives the reconciler over it.
"""

from typing import Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from flock.schemas.declaration import Declaration
from . import ssh
from .allocator import AllocatorFactory
from .cert_manager import CertManager, cert_manager
from .endpoint import AttachmentKind, EndpointKind, attach, declare_endpoint
from .executor import ActionExecutor, RemoteActionsKind
from .host import Host
from .network import (
    CAKind,
    IPAMHostKind,
    IPAMNetworkKind,
    IPAMPortKind,
    NetworkHandle,
    RecordedCAKeys,
    declare_network,
)
from .reconciler import ApplyReport, Deployment, Reconciler

logger = logging.getLogger(__name__)


def build_deployment(declaration: Declaration) -> Deployment:
    """
    Build the resource graph for a declaration

    Per network: IPAM scope, CA(E-1), CA(E), lighthouse endpoints and
    attachments. Per endpoint: port, identity and attachment. Per host:
    memoized setup tasks.
    """
    deployment = Deployment()
    hosts: Dict[str, Host] = {
        h.name: Host(h.name, h.connection, deployment) for h in declaration.hosts
    }

    networks: Dict[str, NetworkHandle] = {}
    for network in declaration.networks:
        ipam_connection = None
        if network.ipam_host:
            ipam_connection = hosts[network.ipam_host].connection.model_dump()
        networks[network.name] = declare_network(deployment, network, hosts, ipam_connection)

    for endpoint in declaration.endpoints:
        network = networks[endpoint.network]
        handle = declare_endpoint(
            deployment,
            network,
            hosts[endpoint.host],
            name=endpoint.name,
            hostname=endpoint.hostname,
            groups=endpoint.groups,
            firewall=endpoint.firewall,
        )
        attach(deployment, network, handle, is_lighthouse=False)

    logger.info(
        f"Declared {len(deployment.resources)} resources for "
        f"{len(declaration.networks)} network(s) and {len(declaration.endpoints)} endpoint(s)"
    )
    return deployment


def resource_kinds(
    db: Session,
    connector=ssh.connect,
    certs: Optional[CertManager] = None,
    executor: Optional[ActionExecutor] = None,
) -> list:
    """Registry of every resource kind, sharing one allocator factory"""
    allocators = AllocatorFactory(db, connector=connector)
    executor = executor or ActionExecutor(connector)
    certs = certs or cert_manager
    return [
        RemoteActionsKind(executor),
        IPAMNetworkKind(allocators),
        IPAMHostKind(allocators),
        IPAMPortKind(allocators),
        CAKind(certs),
        EndpointKind(allocators, RecordedCAKeys(db), certs),
        AttachmentKind(executor),
    ]


class DeploymentService:
    """
    Applies declarations against the recorded state

    Usage:
        service = DeploymentService()
        report = service.apply(db, declaration)
    """

    def __init__(self, connector=ssh.connect, certs: Optional[CertManager] = None):
        self.connector = connector
        self.certs = certs

    def reconciler(self, db: Session, actor_id: Optional[str] = None) -> Reconciler:
        return Reconciler(db, resource_kinds(db, self.connector, self.certs), actor_id=actor_id)

    def apply(self, db: Session, declaration: Declaration, actor_id: Optional[str] = None) -> ApplyReport:
        """
        Apply a declaration

        Raises:
            ValidationError: If the resource graph is inconsistent
            DeploymentError: If any resource failed (report attached)
        """
        deployment = build_deployment(declaration)
        report = self.reconciler(db, actor_id).apply(deployment)
        logger.info(
            f"Apply finished: {len(report.created)} created, {len(report.replaced)} replaced, "
            f"{len(report.refreshed)} refreshed, {len(report.deleted)} deleted"
        )
        return report

    def destroy(self, db: Session, actor_id: Optional[str] = None) -> List[str]:
        """Tear down everything recorded"""
        deleted = self.reconciler(db, actor_id).destroy_all()
        logger.info(f"Destroyed {len(deleted)} resources")
        return deleted


# Singleton instance
deployment_service = DeploymentService()
