import copy
import unittest

from src.cluster.provider import ClusterSnapshot
from src.common.errors import PlanError, PlanFailure
from src.common.identity import SECRET_KEYS_ANNOTATION, SECRET_VERSIONS_ANNOTATION, ResourceIdentity
from src.history.records import RolloutRecord, RolloutResult
from src.planner.actions import Action, ActionType, Plan
from src.planner.diff import render_diff
from src.planner.normalize import documents_equal
from src.planner.planner import inverse_plan, plan
from src.renderer.manifest_set import ManifestSet
from tests.fakes import config_map, deployment, managed

NOW = 1_000.0


def _clock() -> float:
    return NOW


def _observed(document):
    observed = copy.deepcopy(document)
    metadata = observed.setdefault("metadata", {})
    metadata.update({"resourceVersion": "42", "uid": "abc", "creationTimestamp": "2024-01-01T00:00:00Z"})
    observed["status"] = {"readyReplicas": 2}
    return observed


def _namespace(name: str, environment: str):
    return managed({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}, environment)


def _service(name: str, namespace: str, environment: str):
    return managed(
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"selector": {"app": name}, "ports": [{"port": 80}]},
        },
        environment,
    )


class PlanTests(unittest.TestCase):
    def setUp(self) -> None:
        self.documents = [
            _service("web", "dev", "dev"),
            deployment("web", "dev", "dev"),
            config_map("settings", "dev", "dev"),
            _namespace("dev", "dev"),
        ]
        self.target = ManifestSet.from_documents("dev", self.documents)

    def _snapshot(self, documents, captured_at: float = NOW) -> ClusterSnapshot:
        return ClusterSnapshot.of("dev", [_observed(doc) for doc in documents], captured_at)

    def test_empty_cluster_creates_in_dependency_order(self) -> None:
        result = plan(self.target, self._snapshot([]), clock=_clock)
        kinds = [action.identity.kind for action in result]
        self.assertEqual(kinds, ["Namespace", "ConfigMap", "Deployment", "Service"])
        self.assertTrue(all(action.type is ActionType.CREATE for action in result))
        self.assertEqual(result.summary(), {"Create": 4, "Update": 0, "Delete": 0})
        self.assertEqual(result.target_digest, self.target.digest())
        self.assertEqual(result.snapshot_captured_at, NOW)

    def test_converged_cluster_yields_empty_plan(self) -> None:
        result = plan(self.target, self._snapshot(self.documents), clock=_clock)
        self.assertTrue(result.empty)
        self.assertEqual(render_diff(result), "")

    def test_changed_resource_is_updated(self) -> None:
        observed = [deployment("web", "dev", "dev", image="registry.local/app:0.9.0")] + self.documents[2:] + [self.documents[0]]
        result = plan(self.target, self._snapshot(observed), clock=_clock)
        self.assertEqual(len(result), 1)
        action = result.actions[0]
        self.assertEqual(action.type, ActionType.UPDATE)
        self.assertEqual(action.identity, ResourceIdentity.of("Deployment", "web", "dev"))
        self.assertEqual(action.after, self.target[action.identity])

        diff = render_diff(result)
        removed = [line for line in diff.splitlines() if line.startswith("-") and "image:" in line]
        added = [line for line in diff.splitlines() if line.startswith("+") and "image:" in line]
        self.assertEqual(len(removed), 1)
        self.assertIn("registry.local/app:0.9.0", removed[0])
        self.assertIn("registry.local/app:1.0.0", added[0])
        self.assertIn("target/Deployment/dev/web", diff)

    def test_only_managed_resources_of_the_environment_are_deleted(self) -> None:
        stray = config_map("stray", "dev", "dev")
        foreign = config_map("other-env", "dev", "stage")
        unmanaged = {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "manual", "namespace": "dev"}}
        result = plan(self.target, self._snapshot(self.documents + [stray, foreign, unmanaged]), clock=_clock)
        self.assertEqual([str(action) for action in result], ["Delete ConfigMap/dev/stray"])

    def test_namespace_is_deleted_after_its_contents(self) -> None:
        empty = ManifestSet("dev", [])
        result = plan(empty, self._snapshot(self.documents), clock=_clock)
        kinds = [action.identity.kind for action in result]
        self.assertEqual(kinds, ["Service", "Deployment", "ConfigMap", "Namespace"])
        self.assertTrue(all(action.type is ActionType.DELETE for action in result))

    def test_creates_precede_deletes(self) -> None:
        renamed = [doc for doc in self.documents if doc["kind"] != "ConfigMap"] + [config_map("settings-v2", "dev", "dev")]
        target = ManifestSet.from_documents("dev", renamed)
        result = plan(target, self._snapshot(self.documents), clock=_clock)
        self.assertEqual([str(action) for action in result], ["Create ConfigMap/dev/settings-v2", "Delete ConfigMap/dev/settings"])

    def test_stale_snapshot_is_rejected(self) -> None:
        record = RolloutRecord(environment="dev", plan_id="p", applied_at=900.0, finished_at=1_100.0, result=RolloutResult.SUCCEEDED)
        with self.assertRaises(PlanError) as ctx:
            plan(self.target, self._snapshot([], captured_at=1_050.0), record, clock=_clock)
        self.assertIs(ctx.exception.reason, PlanFailure.SNAPSHOT_STALE)
        self.assertTrue(ctx.exception.retryable)

        fresh = plan(self.target, self._snapshot([], captured_at=1_100.0), record, clock=_clock)
        self.assertEqual(len(fresh), 4)

    def test_snapshot_for_other_environment_is_rejected(self) -> None:
        snapshot = ClusterSnapshot.of("stage", [], NOW)
        with self.assertRaises(ValueError):
            plan(self.target, snapshot, clock=_clock)

    def test_plans_have_distinct_ids(self) -> None:
        first = plan(self.target, self._snapshot([]), clock=_clock)
        second = plan(self.target, self._snapshot([]), clock=_clock)
        self.assertNotEqual(first.id, second.id)

    def test_plan_survives_json(self) -> None:
        original = plan(self.target, self._snapshot([]), clock=_clock)
        restored = Plan.from_json(original.to_json())
        self.assertEqual(restored, original)


class InversePlanTests(unittest.TestCase):
    def test_inverts_each_action(self) -> None:
        old = deployment("web", "dev", "dev", image="registry.local/app:1.0.0")
        new = deployment("web", "dev", "dev", image="registry.local/app:2.0.0")
        settings = config_map("settings", "dev", "dev")
        gone = config_map("legacy", "dev", "dev")
        applied = [
            Action(ActionType.CREATE, ResourceIdentity.from_document(settings), after=settings),
            Action(ActionType.UPDATE, ResourceIdentity.from_document(new), before=old, after=new),
            Action(ActionType.DELETE, ResourceIdentity.from_document(gone), before=gone),
        ]
        result = inverse_plan(applied, "dev", snapshot_captured_at=NOW, clock=_clock)
        self.assertEqual(
            [str(action) for action in result],
            ["Create ConfigMap/dev/legacy", "Update Deployment/dev/web", "Delete ConfigMap/dev/settings"],
        )
        update = result.actions[1]
        self.assertEqual(update.after, old)
        self.assertEqual(update.before, new)


class NormalizeTests(unittest.TestCase):
    def test_secrets_compare_by_pinned_versions(self) -> None:
        secret = managed(
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {
                    "name": "creds",
                    "namespace": "dev",
                    "annotations": {SECRET_KEYS_ANNOTATION: "password", SECRET_VERSIONS_ANNOTATION: "password=1"},
                },
            },
            "dev",
        )
        with_data = copy.deepcopy(secret)
        with_data["data"] = {"password": "c2VjcmV0"}
        self.assertTrue(documents_equal(secret, with_data))

        bumped = copy.deepcopy(secret)
        bumped["metadata"]["annotations"][SECRET_VERSIONS_ANNOTATION] = "password=2"
        self.assertFalse(documents_equal(secret, bumped))

    def test_service_cluster_ip_is_ignored(self) -> None:
        service = _service("web", "dev", "dev")
        allocated = copy.deepcopy(service)
        allocated["spec"]["clusterIP"] = "10.0.0.12"
        self.assertTrue(documents_equal(service, allocated))


if __name__ == "__main__":
    unittest.main()
