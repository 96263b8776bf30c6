import pytest

from flock.core.reconciler import Deployment, Reconciler, Ref, diff_keys
from flock.database.models import AuditLog, ResourceState
from flock.exceptions import DeploymentError, ProvisioningError, ValidationError


class RecordingKind:
    """Kind whose only tracked field is `size`"""
    name = "thing"

    def __init__(self):
        self.events = []
        self.failing = set()
        self.failing_deletes = set()
        self.counter = 0

    def create(self, inputs):
        if inputs.get("label") in self.failing:
            raise ProvisioningError("create failed", exit_code=1, stderr=f"no space left for {inputs['label']}")
        self.counter += 1
        self.events.append(("create", inputs.get("label")))
        resource_id = f"id-{self.counter}"
        return resource_id, {**inputs, "id": resource_id}

    def diff(self, resource_id, old_outputs, new_inputs):
        return diff_keys(old_outputs, new_inputs, ("size",))

    def delete(self, resource_id, outputs):
        self.events.append(("delete", outputs.get("label")))
        if outputs.get("label") in self.failing_deletes:
            raise ProvisioningError("delete failed", stderr="device busy")


@pytest.fixture
def kind():
    return RecordingKind()


@pytest.fixture
def reconciler(db, kind):
    return Reconciler(db, [kind])


def test_create_then_noop(reconciler, kind):
    action, outputs = reconciler.reconcile("a", "thing", {"size": 1, "label": "a"})
    assert action == "created"
    assert outputs["id"] == "id-1"

    action, outputs = reconciler.reconcile("a", "thing", {"size": 1, "label": "a"})
    assert action == "unchanged"
    assert outputs["id"] == "id-1"
    assert kind.events == [("create", "a")]


def test_tracked_change_deletes_before_creating(reconciler, kind):
    reconciler.reconcile("a", "thing", {"size": 1, "label": "old"})
    action, outputs = reconciler.reconcile("a", "thing", {"size": 2, "label": "new"})

    assert action == "replaced"
    assert outputs["id"] == "id-2"
    assert kind.events == [("create", "old"), ("delete", "old"), ("create", "new")]


def test_untracked_change_is_refreshed_without_side_effects(reconciler, kind, db):
    reconciler.reconcile("a", "thing", {"size": 1, "label": "a"})
    action, outputs = reconciler.reconcile("a", "thing", {"size": 1, "label": "a", "note": "hello"})

    assert action == "refreshed"
    assert outputs["note"] == "hello"
    assert outputs["id"] == "id-1"
    assert kind.events == [("create", "a")]
    assert db.query(ResourceState).filter_by(name="a").one().outputs["note"] == "hello"


def test_delete_errors_are_swallowed(reconciler, kind, db):
    kind.failing_deletes.add("a")
    reconciler.reconcile("a", "thing", {"size": 1, "label": "a"})

    assert reconciler.delete("a") is True
    assert reconciler.get_state("a") is None
    assert reconciler.delete("a") is False


def test_apply_resolves_refs_in_dependency_order(reconciler, kind):
    deployment = Deployment()
    deployment.add("child", "thing", {"size": 1, "label": "child", "parent": Ref("parent", "id")})
    deployment.add("parent", "thing", {"size": 1, "label": "parent"})

    report = reconciler.apply(deployment)

    assert kind.events == [("create", "parent"), ("create", "child")]
    assert reconciler.get_state("child").outputs["parent"] == "id-1"
    assert sorted(report.created) == ["child", "parent"]


def test_apply_skips_dependents_of_failures_and_continues(reconciler, kind):
    kind.failing.add("broken")
    deployment = Deployment()
    deployment.add("broken", "thing", {"size": 1, "label": "broken"})
    deployment.add("dependent", "thing", {"size": 1, "label": "dependent", "up": Ref("broken", "id")})
    deployment.add("independent", "thing", {"size": 1, "label": "independent"})

    with pytest.raises(DeploymentError) as excinfo:
        reconciler.apply(deployment)

    failures = excinfo.value.failures
    assert [f["resource"] for f in failures] == ["broken"]
    assert failures[0]["stderr"] == "no space left for broken"
    assert excinfo.value.report.skipped == ["dependent"]
    assert excinfo.value.report.created == ["independent"]
    assert reconciler.get_state("broken") is None
    assert reconciler.get_state("dependent") is None


def test_apply_destroys_undeclared_resources_dependents_first(reconciler, kind):
    deployment = Deployment()
    deployment.add("base", "thing", {"size": 1, "label": "base"})
    deployment.add("mid", "thing", {"size": 1, "label": "mid", "b": Ref("base", "id")})
    deployment.add("top", "thing", {"size": 1, "label": "top", "m": Ref("mid", "id")})
    reconciler.apply(deployment)
    kind.events.clear()

    report = reconciler.apply(Deployment())

    assert kind.events == [("delete", "top"), ("delete", "mid"), ("delete", "base")]
    assert report.deleted == ["top", "mid", "base"]


def test_destroy_all_reverses_creation_order(reconciler, kind):
    deployment = Deployment()
    deployment.add("base", "thing", {"size": 1, "label": "base"})
    deployment.add("top", "thing", {"size": 1, "label": "top", "b": Ref("base", "id")})
    reconciler.apply(deployment)
    kind.events.clear()

    assert reconciler.destroy_all() == ["top", "base"]
    assert kind.events == [("delete", "top"), ("delete", "base")]


def test_dependency_cycles_are_rejected():
    deployment = Deployment()
    deployment.add("a", "thing", {"other": Ref("b")})
    deployment.add("b", "thing", {"other": Ref("a")})

    with pytest.raises(ValidationError):
        deployment.order()


def test_duplicate_and_dangling_declarations_are_rejected():
    deployment = Deployment()
    deployment.add("a", "thing", {"other": Ref("missing")})

    with pytest.raises(ValidationError):
        deployment.add("a", "thing", {})
    with pytest.raises(ValidationError):
        deployment.order()


def test_changes_are_audited(reconciler, db):
    reconciler.reconcile("a", "thing", {"size": 1, "label": "a"})
    reconciler.reconcile("a", "thing", {"size": 2, "label": "a"})
    reconciler.delete("a")

    actions = [log.event_action for log in db.query(AuditLog).order_by(AuditLog.id)]
    assert actions == ["create", "delete", "replace", "delete"]


def test_diff_keys():
    result = diff_keys({"a": 1, "b": [1, 2]}, {"a": 1, "b": [1, 2]}, ("a",))
    assert result.changed is False

    result = diff_keys({"a": 1, "b": 1}, {"a": 1, "b": 2}, ("a",))
    assert result.changed is True
    assert result.replace_keys == []

    result = diff_keys({"a": 1}, {"a": 2}, ("a",))
    assert result.replace_keys == ["a"]
