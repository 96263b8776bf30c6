# flock/database/models.py
"""
SQLAlchemy Database Models for the Flock Control Plane
"""

from sqlalchemy import (
    Column, BigInteger, Integer, String, DateTime, Text,
    Index, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
import enum
import json

Base = declarative_base()


class ScopeKind(str, enum.Enum):
    """Kinds of allocation scope"""
    NETWORK = "network"    # overlay addresses of one network
    HOST = "host"          # underlay ports of one host


class IPAMScope(Base):
    """
    Allocation scope - a bounded integer interval shared by every
    orchestration run touching it
    """
    __tablename__ = "ipam_scopes"

    scope_id = Column(String(64), primary_key=True,
                      comment="Stable scope identifier (network id or host id)")
    kind = Column(String(10), nullable=False, index=True,
                  comment="Scope kind: network, host")
    cidr = Column(String(18), nullable=True,
                  comment="Network CIDR for address scopes")

    # Inclusive bounds of allocatable values
    lower = Column(BigInteger, nullable=False)
    upper = Column(BigInteger, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    allocations = relationship(
        "IPAllocation",
        back_populates="scope",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<IPAMScope(scope_id={self.scope_id}, kind={self.kind}, lower={self.lower}, upper={self.upper})>"

    @property
    def size(self) -> int:
        return max(0, self.upper - self.lower + 1)


class IPAllocation(Base):
    """
    IP Allocation table - one row per value currently held in a scope
    Used for both overlay addresses and underlay ports
    """
    __tablename__ = "ip_allocations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    scope_id = Column(String(64), ForeignKey("ipam_scopes.scope_id", ondelete="CASCADE"),
                      nullable=False, index=True)
    binding_id = Column(String(64), nullable=False,
                        comment="Caller-supplied id the value is bound to")
    value = Column(BigInteger, nullable=False,
                   comment="Allocated integer (IPv4 address as int, or port)")

    allocated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    scope = relationship("IPAMScope", back_populates="allocations")

    __table_args__ = (
        UniqueConstraint("scope_id", "binding_id", name="uq_allocation_binding"),
        UniqueConstraint("scope_id", "value", name="uq_allocation_value"),
    )


class ResourceState(Base):
    """
    Recorded state of one reconciled resource
    Holds the last-applied inputs and outputs used for diffing
    """
    __tablename__ = "resource_states"

    name = Column(String(200), primary_key=True,
                  comment="Declared resource name (unique per deployment)")
    kind = Column(String(50), nullable=False, index=True,
                  comment="Resource kind used to dispatch create/diff/delete")
    resource_id = Column(String(64), nullable=False,
                         comment="Id returned by create")

    inputs_json = Column(Text, nullable=False, default="{}")
    outputs_json = Column(Text, nullable=False, default="{}")
    dependencies_json = Column(Text, nullable=False, default="[]",
                               comment="Names of resources this one depends on")

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('ix_resource_states_kind_name', 'kind', 'name'),
    )

    def __repr__(self):
        return f"<ResourceState(name={self.name}, kind={self.kind}, id={self.resource_id})>"

    @property
    def inputs(self) -> dict:
        return json.loads(self.inputs_json or "{}")

    @inputs.setter
    def inputs(self, value: dict) -> None:
        self.inputs_json = json.dumps(value, sort_keys=True)

    @property
    def outputs(self) -> dict:
        return json.loads(self.outputs_json or "{}")

    @outputs.setter
    def outputs(self, value: dict) -> None:
        self.outputs_json = json.dumps(value, sort_keys=True)

    @property
    def dependencies(self) -> list:
        return json.loads(self.dependencies_json or "[]")

    @dependencies.setter
    def dependencies(self, value: list) -> None:
        self.dependencies_json = json.dumps(sorted(value))


class AuditLog(Base):
    """
    Audit Log table - records every change the reconciler makes
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Event information
    event_type = Column(String(50), nullable=False, index=True,
                        comment="Event type: resource, ipam, deployment")
    event_action = Column(String(20), nullable=False,
                          comment="Action: create, replace, refresh, delete")

    # Actor
    actor_type = Column(String(20), nullable=False,
                        comment="Who performed: admin, system")
    actor_id = Column(String(100), nullable=True)

    # Target
    target_type = Column(String(50), nullable=True,
                         comment="Target resource kind")
    target_id = Column(String(200), nullable=True,
                       comment="Target resource name")

    # Details
    details = Column(Text, nullable=True,
                     comment="JSON-encoded additional details")
    status = Column(String(20), default="success", nullable=False,
                    comment="Outcome: success, failure")

    # Timestamp
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('ix_audit_event_created', 'event_type', 'created_at'),
        Index('ix_audit_target_created', 'target_type', 'target_id', 'created_at'),
    )
