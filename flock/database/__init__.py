"""
Database modules
"""

from .session import get_db, init_db, db_manager, SessionLocal, engine, build_engine
from .models import Base, IPAMScope, IPAllocation, ResourceState, AuditLog, ScopeKind

__all__ = [
    # Session
    "get_db",
    "init_db",
    "db_manager",
    "SessionLocal",
    "engine",
    "build_engine",
    # Models
    "Base",
    "IPAMScope",
    "IPAllocation",
    "ResourceState",
    "AuditLog",
    "ScopeKind",
]
