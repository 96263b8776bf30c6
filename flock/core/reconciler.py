# flock/core/reconciler.py
"""
Resource Reconciler

Generic create/diff/delete engine. Resource kinds are plain objects
registered by name; one Reconciler dispatches on the recorded kind.
Provisioned resources are never updated in place: a tracked change
deletes the old resource, then creates the new one.
"""

import json
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime
from graphlib import CycleError, TopologicalSorter
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from sqlalchemy.orm import Session

from flock.config import settings
from flock.database.models import AuditLog, ResourceState
from flock.exceptions import DeploymentError, FlockError, ValidationError

logger = logging.getLogger(__name__)


# === Contract ===

@dataclass
class DiffResult:
    changed: bool
    replace_keys: List[str] = field(default_factory=list)

    @property
    def replace(self) -> bool:
        return bool(self.replace_keys)


class ResourceKind(Protocol):
    """
    create(inputs) -> (id, outputs)
    diff(id, old_outputs, new_inputs) -> DiffResult
    delete(id, outputs)

    A kind may also define seed(id, outputs) to re-register what it
    holds in external state before a run.
    create_replacement(inputs, previous_outputs), when defined, is used
    instead of create after the old resource was deleted for a replace.
    """
    name: str

    def create(self, inputs: dict) -> Tuple[str, dict]: ...

    def diff(self, resource_id: str, old_outputs: dict, new_inputs: dict) -> DiffResult: ...

    def delete(self, resource_id: str, outputs: dict) -> None: ...


def canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def diff_keys(old_outputs: dict, new_inputs: dict, replace_keys: Sequence[str]) -> DiffResult:
    """
    Compare tracked keys; any difference in them is a replace.
    Differences elsewhere in the inputs only mark the resource changed.
    """
    replaces = [k for k in replace_keys if canonical(old_outputs.get(k)) != canonical(new_inputs.get(k))]
    changed = bool(replaces) or any(
        canonical(old_outputs.get(k)) != canonical(v) for k, v in new_inputs.items()
    )
    return DiffResult(changed=changed, replace_keys=replaces)


def new_id() -> str:
    return str(uuid.uuid4())


# === Declared graph ===

@dataclass(frozen=True)
class Ref:
    """Placeholder for another resource's output, resolved at apply time"""
    resource: str
    key: Optional[str] = None


@dataclass
class ResourceDecl:
    name: str
    kind: str
    inputs: dict
    depends_on: Set[str] = field(default_factory=set)


def find_refs(value: Any) -> Set[str]:
    if isinstance(value, Ref):
        return {value.resource}
    if isinstance(value, dict):
        return set().union(*(find_refs(v) for v in value.values())) if value else set()
    if isinstance(value, (list, tuple)):
        return set().union(*(find_refs(v) for v in value)) if value else set()
    return set()


def resolve_refs(value: Any, outputs: Dict[str, dict]) -> Any:
    if isinstance(value, Ref):
        resolved = outputs[value.resource]
        return resolved if value.key is None else resolved[value.key]
    if isinstance(value, dict):
        return {k: resolve_refs(v, outputs) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_refs(v, outputs) for v in value]
    return value


class Deployment:
    """Explicit dependency DAG of declared resources"""

    def __init__(self):
        self.resources: Dict[str, ResourceDecl] = {}

    def add(self, name: str, kind: str, inputs: dict, depends_on: Iterable[str] = ()) -> Ref:
        if name in self.resources:
            raise ValidationError(f"Resource {name} declared twice")
        deps = set(depends_on) | find_refs(inputs)
        self.resources[name] = ResourceDecl(name, kind, inputs, deps)
        return Ref(name)

    def __contains__(self, name: str) -> bool:
        return name in self.resources

    def order(self) -> List[str]:
        """Topological order (dependencies first)"""
        for decl in self.resources.values():
            missing = decl.depends_on - self.resources.keys()
            if missing:
                raise ValidationError(f"{decl.name} depends on undeclared resources {sorted(missing)}")
        graph = {name: decl.depends_on for name, decl in sorted(self.resources.items())}
        try:
            return list(TopologicalSorter(graph).static_order())
        except CycleError as e:
            raise ValidationError(f"Dependency cycle: {e.args[1]}") from e


@dataclass
class ApplyReport:
    created: List[str] = field(default_factory=list)
    replaced: List[str] = field(default_factory=list)
    refreshed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "replaced": self.replaced,
            "refreshed": self.refreshed,
            "unchanged": self.unchanged,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "failed": self.failed,
        }


# === Driver ===

class Reconciler:
    """
    Reconciles declared resources against recorded state

    Responsibilities:
    1. Seed external allocator state from recorded outputs
    2. Destroy resources no longer declared (reverse dependency order)
    3. Create / replace / refresh declared resources in dependency order
    4. Record state and audit events
    """

    def __init__(self, db: Session, kinds: Iterable[ResourceKind], actor_id: Optional[str] = None):
        self.db = db
        self.kinds: Dict[str, ResourceKind] = {k.name: k for k in kinds}
        self.actor_id = actor_id

    def _kind(self, name: str) -> ResourceKind:
        try:
            return self.kinds[name]
        except KeyError:
            raise ValidationError(f"Unknown resource kind '{name}'")

    # --- state ---

    def get_state(self, name: str) -> Optional[ResourceState]:
        return self.db.query(ResourceState).filter(ResourceState.name == name).first()

    def all_states(self) -> List[ResourceState]:
        return self.db.query(ResourceState).order_by(ResourceState.name).all()

    # --- single resource ---

    def reconcile(self, name: str, kind: str, inputs: dict, dependencies: Iterable[str] = ()) -> Tuple[str, dict]:
        """
        Bring one resource in line with its inputs

        Returns:
            Tuple of (action, outputs); action is one of
            created, replaced, refreshed, unchanged
        """
        state = self.get_state(name)

        if state is None:
            outputs = self._create(name, kind, inputs, dependencies)
            return "created", outputs

        if state.kind != kind:
            logger.info(f"{name}: kind changed {state.kind} -> {kind}, replacing")
            self.delete(name)
            return "replaced", self._create(name, kind, inputs, dependencies, action="replace")

        result = self._kind(kind).diff(state.resource_id, state.outputs, inputs)

        if result.replace:
            logger.info(f"{name}: replacing due to changes in {result.replace_keys}")
            previous = state.outputs
            self.delete(name)
            return "replaced", self._create(name, kind, inputs, dependencies, action="replace", previous=previous)

        if result.changed:
            outputs = {**state.outputs, **inputs}
            state.inputs = inputs
            state.outputs = outputs
            state.dependencies = list(dependencies)
            self.db.commit()
            self._log_event("refresh", kind, name)
            logger.info(f"{name}: refreshed recorded inputs")
            return "refreshed", outputs

        if set(state.dependencies) != set(dependencies):
            state.dependencies = list(dependencies)
            self.db.commit()
        return "unchanged", state.outputs

    def _create(
        self,
        name: str,
        kind: str,
        inputs: dict,
        dependencies: Iterable[str],
        action: str = "create",
        previous: Optional[dict] = None,
    ) -> dict:
        impl = self._kind(kind)
        create_replacement = getattr(impl, "create_replacement", None)
        if previous is not None and create_replacement is not None:
            resource_id, outputs = create_replacement(inputs, previous)
        else:
            resource_id, outputs = impl.create(inputs)

        state = ResourceState(name=name, kind=kind, resource_id=resource_id)
        state.inputs = inputs
        state.outputs = outputs
        state.dependencies = list(dependencies)
        self.db.add(state)
        self.db.commit()

        self._log_event(action, kind, name, details={"resource_id": resource_id})
        logger.info(f"{name}: {action}d ({kind} {resource_id})")
        return outputs

    def delete(self, name: str) -> bool:
        """
        Delete one recorded resource
        Delete-path errors are logged and swallowed; the record is dropped
        """
        state = self.get_state(name)
        if state is None:
            return False

        status = "success"
        try:
            self._kind(state.kind).delete(state.resource_id, state.outputs)
        except Exception as e:
            status = "failure"
            logger.error(f"{name}: delete failed, continuing: {e}")

        kind = state.kind
        self.db.delete(state)
        self.db.commit()
        self._log_event("delete", kind, name, status=status)
        logger.info(f"{name}: deleted")
        return True

    # --- whole deployment ---

    def seed(self) -> None:
        """Re-register every recorded allocation with its allocator (scopes first)"""
        for state in reversed(self._reverse_order(self.all_states())):
            kind = self.kinds.get(state.kind)
            seed = getattr(kind, "seed", None)
            if seed is None:
                continue
            try:
                seed(state.resource_id, state.outputs)
            except FlockError as e:
                logger.warning(f"{state.name}: could not seed allocator state: {e}")

    def _reverse_order(self, states: List[ResourceState]) -> List[ResourceState]:
        by_name = {s.name: s for s in states}
        graph = {s.name: set(s.dependencies) & by_name.keys() for s in states}
        try:
            order = list(TopologicalSorter(graph).static_order())
        except CycleError:
            order = sorted(by_name)
        return [by_name[n] for n in reversed(order)]

    def apply(self, deployment: Deployment) -> ApplyReport:
        """
        Reconcile the whole deployment

        Raises:
            DeploymentError: if any resource failed; independent resources
                are still applied and the report is attached
        """
        order = deployment.order()
        report = ApplyReport()

        self.seed()

        removed = [s for s in self.all_states() if s.name not in deployment]
        for state in self._reverse_order(removed):
            self.delete(state.name)
            report.deleted.append(state.name)

        outputs: Dict[str, dict] = {}
        blocked: Set[str] = set()
        for name in order:
            decl = deployment.resources[name]
            if decl.depends_on & blocked:
                blocked.add(name)
                report.skipped.append(name)
                logger.warning(f"{name}: skipped, a dependency failed")
                continue

            try:
                inputs = resolve_refs(decl.inputs, outputs)
                action, outputs[name] = self.reconcile(name, decl.kind, inputs, decl.depends_on)
            except FlockError as e:
                self.db.rollback()
                blocked.add(name)
                failure = {
                    "resource": name,
                    "kind": decl.kind,
                    "error": str(e),
                    "error_code": e.error_code,
                }
                stderr = getattr(e, "stderr", None)
                if stderr:
                    failure["stderr"] = stderr.strip()
                report.failed.append(failure)
                self._log_event("create", decl.kind, name, status="failure", details={"error": str(e)})
                logger.error(f"{name}: {e}")
                continue

            getattr(report, action).append(name)

        if report.failed:
            raise DeploymentError(report.failed, report=report)
        return report

    def destroy_all(self) -> List[str]:
        """Tear down every recorded resource, dependents first"""
        deleted = []
        for state in self._reverse_order(self.all_states()):
            self.delete(state.name)
            deleted.append(state.name)
        return deleted

    # --- audit ---

    def _log_event(
        self,
        event_action: str,
        target_type: str,
        target_id: str,
        status: str = "success",
        details: Optional[dict] = None
    ):
        """Log an audit event"""
        if not settings.ENABLE_AUDIT_LOG:
            return

        try:
            log = AuditLog(
                event_type="resource",
                event_action=event_action,
                actor_type="admin" if self.actor_id else "system",
                actor_id=self.actor_id,
                target_type=target_type,
                target_id=target_id,
                status=status,
                details=json.dumps(details) if details else None,
                created_at=datetime.utcnow(),
            )
            self.db.add(log)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to create audit log: {e}")
