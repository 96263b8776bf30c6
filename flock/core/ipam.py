# flock/core/ipam.py
"""
IP Address Management (IPAM) Service
First-fit allocation of overlay addresses (per network) and
underlay ports (per host) backed by the database
"""

import ipaddress
from typing import Dict, Sequence, Set, Tuple
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
import logging

from flock.database.models import IPAMScope, IPAllocation, ScopeKind
from flock.exceptions import ExhaustionError, ValidationError

logger = logging.getLogger(__name__)


def address_bounds(cidr: str) -> Tuple[int, int]:
    """
    First and last usable host address of an IPv4 CIDR as integers
    Network and broadcast addresses are excluded
    """
    try:
        network = ipaddress.IPv4Network(cidr, strict=False)
    except ValueError as e:
        raise ValidationError(f"Invalid CIDR {cidr!r}: {e}") from e

    if network.prefixlen > 30:
        raise ValidationError(f"CIDR {cidr} has no usable host addresses")

    lower = int(network.network_address) + 1
    upper = int(network.broadcast_address) - 1
    return lower, upper


def port_bounds(start_port: int, end_port: int) -> Tuple[int, int]:
    """Inclusive bounds for a [start, end) port range"""
    if not (1 <= start_port < end_port <= 65536):
        raise ValidationError(
            f"Invalid port range [{start_port}, {end_port}): must satisfy 1 <= start < end <= 65536"
        )
    return start_port, end_port - 1


class IPAMService:
    """
    IPAM Service for managing allocation scopes

    Features:
    - Address scopes per network, port scopes per host
    - Deterministic first-fit allocation
    - Allocations bound to caller-supplied ids (idempotent per id)
    - Idempotent release, immediate reuse of freed values
    - Pool statistics

    Every operation runs in one transaction and locks the scope row,
    so operations against one scope are serialized by the database.
    """

    # === Scope management ===

    def create_network(self, db: Session, network_id: str, cidr: str) -> IPAMScope:
        """Create an address scope for a network"""
        lower, upper = address_bounds(cidr)
        normalized = str(ipaddress.IPv4Network(cidr, strict=False))
        return self._create_scope(db, network_id, ScopeKind.NETWORK, lower, upper, cidr=normalized)

    def create_host(self, db: Session, host_id: str, start_port: int, end_port: int) -> IPAMScope:
        """Create a port scope for a host; end_port is exclusive"""
        lower, upper = port_bounds(start_port, end_port)
        return self._create_scope(db, host_id, ScopeKind.HOST, lower, upper)

    def destroy_network(self, db: Session, network_id: str) -> bool:
        return self._delete_scope(db, network_id, ScopeKind.NETWORK)

    def delete_host(self, db: Session, host_id: str) -> bool:
        return self._delete_scope(db, host_id, ScopeKind.HOST)

    # === Allocation ===

    def allocate_address(self, db: Session, network_id: str, address_id: str, avoid: Sequence[str] = ()) -> str:
        """
        Allocate next available address from the network's pool

        Args:
            avoid: Addresses to pass over while any other address is free

        Returns:
            IP address without prefix (e.g., "10.0.1.1")

        Raises:
            ExhaustionError: If the address pool is exhausted
        """
        avoided = set()
        for address in avoid:
            try:
                avoided.add(int(ipaddress.IPv4Address(address.split("/")[0])))
            except ValueError as e:
                raise ValidationError(f"Invalid address {address!r}: {e}") from e
        value = self._allocate(db, network_id, ScopeKind.NETWORK, address_id, avoid=avoided)
        return str(ipaddress.IPv4Address(value))

    def allocate_port(self, db: Session, host_id: str, port_id: str) -> int:
        return self._allocate(db, host_id, ScopeKind.HOST, port_id)

    def free_address(self, db: Session, network_id: str, address_id: str) -> bool:
        return self._free(db, network_id, ScopeKind.NETWORK, address_id)

    def free_port(self, db: Session, host_id: str, port_id: str) -> bool:
        return self._free(db, host_id, ScopeKind.HOST, port_id)

    def reserve_address(self, db: Session, network_id: str, address_id: str, address: str) -> None:
        """Record an address that is already in use (startup seeding)"""
        try:
            value = int(ipaddress.IPv4Address(address.split('/')[0]))
        except ValueError as e:
            raise ValidationError(f"Invalid address {address!r}: {e}") from e
        self._reserve(db, network_id, ScopeKind.NETWORK, address_id, value)

    def reserve_port(self, db: Session, host_id: str, port_id: str, port: int) -> None:
        self._reserve(db, host_id, ScopeKind.HOST, port_id, int(port))

    # === Inspection ===

    def list_allocations(self, db: Session, scope_id: str) -> Dict[str, str]:
        """Binding id -> allocated value (addresses rendered as dotted quads)"""
        scope = self._get_scope(db, scope_id)
        render = (lambda v: str(ipaddress.IPv4Address(v))) if scope.kind == ScopeKind.NETWORK.value else str
        return {a.binding_id: render(a.value) for a in sorted(scope.allocations, key=lambda a: a.value)}

    def get_allocation_stats(self, db: Session, scope_id: str) -> dict:
        """
        Get allocation statistics for a scope

        Returns:
            Dictionary with allocation stats
        """
        scope = self._get_scope(db, scope_id)
        used = len(scope.allocations)
        total = scope.size

        return {
            "scope_id": scope.scope_id,
            "kind": scope.kind,
            "cidr": scope.cidr,
            "lower": scope.lower,
            "upper": scope.upper,
            "total": total,
            "used": used,
            "available": total - used,
            "utilization_percent": round((used / total) * 100, 2) if total > 0 else 0
        }

    # === Internals ===

    def _create_scope(
        self,
        db: Session,
        scope_id: str,
        kind: ScopeKind,
        lower: int,
        upper: int,
        cidr: str = None
    ) -> IPAMScope:
        existing = db.query(IPAMScope).filter(IPAMScope.scope_id == scope_id).first()
        if existing:
            if (existing.kind, existing.lower, existing.upper) == (kind.value, lower, upper):
                logger.info(f"Scope {scope_id} already exists")
                return existing
            raise ValidationError(f"Scope {scope_id} already exists with different bounds")

        scope = IPAMScope(scope_id=scope_id, kind=kind.value, cidr=cidr, lower=lower, upper=upper)
        db.add(scope)
        db.commit()
        logger.info(f"Created {kind.value} scope {scope_id} [{lower}, {upper}]")
        return scope

    def _delete_scope(self, db: Session, scope_id: str, kind: ScopeKind) -> bool:
        scope = db.query(IPAMScope).filter(
            IPAMScope.scope_id == scope_id,
            IPAMScope.kind == kind.value
        ).first()
        if not scope:
            return False

        db.delete(scope)
        db.commit()
        logger.info(f"Deleted {kind.value} scope {scope_id}")
        return True

    def _get_scope(self, db: Session, scope_id: str, kind: ScopeKind = None, lock: bool = False) -> IPAMScope:
        query = db.query(IPAMScope).filter(IPAMScope.scope_id == scope_id)
        if kind is not None:
            query = query.filter(IPAMScope.kind == kind.value)
        if lock:
            query = query.with_for_update()
        scope = query.first()
        if not scope:
            raise ValidationError(f"Allocation scope {scope_id} does not exist")
        return scope

    def _allocate(self, db: Session, scope_id: str, kind: ScopeKind, binding_id: str, avoid: Set[int] = frozenset()) -> int:
        scope = self._get_scope(db, scope_id, kind, lock=True)

        used = {}
        for allocation in scope.allocations:
            used[allocation.value] = allocation.binding_id
            if allocation.binding_id == binding_id:
                logger.info(f"{binding_id} already holds {allocation.value} in {scope_id}")
                db.commit()
                return allocation.value

        # Find first available value; avoided values only as a last resort
        fallback = None
        for value in range(scope.lower, scope.upper + 1):
            if value in used:
                continue
            if value in avoid:
                if fallback is None:
                    fallback = value
                continue
            return self._bind(db, scope_id, kind, binding_id, value)

        if fallback is not None:
            return self._bind(db, scope_id, kind, binding_id, fallback)

        db.rollback()
        logger.error(f"{kind.value} scope {scope_id} exhausted")
        what = "addresses" if kind == ScopeKind.NETWORK else "ports"
        raise ExhaustionError(f"{kind.value} {scope_id} is out of {what}")

    def _bind(self, db: Session, scope_id: str, kind: ScopeKind, binding_id: str, value: int) -> int:
        db.add(IPAllocation(scope_id=scope_id, binding_id=binding_id, value=value))
        db.commit()
        logger.info(f"Allocated {value} in {kind.value} scope {scope_id} for {binding_id}")
        return value

    def _free(self, db: Session, scope_id: str, kind: ScopeKind, binding_id: str) -> bool:
        allocation = db.query(IPAllocation).join(IPAMScope).filter(
            IPAllocation.scope_id == scope_id,
            IPAllocation.binding_id == binding_id,
            IPAMScope.kind == kind.value
        ).first()

        if not allocation:
            return False

        value = allocation.value
        db.delete(allocation)
        db.commit()
        logger.info(f"Released {value} in {kind.value} scope {scope_id} from {binding_id}")
        return True

    def _reserve(self, db: Session, scope_id: str, kind: ScopeKind, binding_id: str, value: int) -> None:
        scope = self._get_scope(db, scope_id, kind, lock=True)

        if not (scope.lower <= value <= scope.upper):
            db.rollback()
            raise ValidationError(f"{value} is outside scope {scope_id} [{scope.lower}, {scope.upper}]")

        for allocation in scope.allocations:
            if allocation.binding_id == binding_id and allocation.value == value:
                db.commit()
                return
            if allocation.binding_id == binding_id or allocation.value == value:
                db.rollback()
                raise ValidationError(
                    f"Cannot reserve {value} for {binding_id} in {scope_id}: "
                    f"held by {allocation.binding_id} -> {allocation.value}"
                )

        try:
            db.add(IPAllocation(scope_id=scope_id, binding_id=binding_id, value=value))
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ValidationError(f"Conflicting reservation in {scope_id}") from e
        logger.info(f"Reserved {value} in {kind.value} scope {scope_id} for {binding_id}")


# Singleton instance
ipam_service = IPAMService()
