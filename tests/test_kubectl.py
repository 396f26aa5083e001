import dataclasses
import json
import unittest

import yaml

from src.cluster.kubectl import (
    CLUSTER_KINDS,
    LAST_APPLIED_ANNOTATION,
    NAMESPACED_KINDS,
    KubectlCluster,
    KubectlError,
    observed_document,
    resource_name,
)
from src.common.config import default_environments
from src.common.errors import ApplyActionError, ClusterError, ManifestRejectedError
from src.common.identity import ResourceIdentity
from src.planner.actions import Action, ActionType
from src.planner.planner import plan as compute_plan
from src.renderer.manifest_set import ManifestSet
from tests.fakes import FakeClock, config_map, deployment, managed


class _ScriptedRunner:
    def __init__(self, responses=None, error=None) -> None:
        self.responses = responses or {}
        self.error = error
        self.calls = []

    def run(self, args, *, input_text=None):
        self.calls.append((list(args), input_text))
        if self.error is not None:
            raise self.error
        return ""

    def run_json(self, args):
        self.calls.append((list(args), None))
        if self.error is not None:
            raise self.error
        return self.responses.get(args[1], {"items": []})


class ObservedDocumentTests(unittest.TestCase):
    def test_prefers_last_applied_configuration(self) -> None:
        declared = config_map("settings", "dev", "dev")
        live = json.loads(json.dumps(declared))
        live["metadata"]["annotations"] = {LAST_APPLIED_ANNOTATION: json.dumps(declared)}
        live["metadata"]["resourceVersion"] = "77"
        live["data"]["SERVER_DEFAULT"] = "1"
        self.assertEqual(observed_document(live), declared)

    def test_falls_back_to_live_object_and_strips_secret_data(self) -> None:
        live = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "creds", "namespace": "dev", "annotations": {LAST_APPLIED_ANNOTATION: "not json"}},
            "data": {"password": "c2VjcmV0"},
        }
        observed = observed_document(live)
        self.assertNotIn("data", observed)
        self.assertNotIn("annotations", observed["metadata"])
        self.assertIn("data", live)


class KubectlErrorTests(unittest.TestCase):
    def test_transient_markers(self) -> None:
        self.assertTrue(KubectlError(["apply"], "Operation cannot be fulfilled: the object has been modified").transient)
        self.assertTrue(KubectlError(["get"], "dial tcp: connection refused").transient)
        self.assertFalse(KubectlError(["apply"], 'admission webhook denied the request').transient)
        self.assertTrue(KubectlError(["get"], 'Error from server (NotFound): deployments "x" not found').not_found)


class KubectlClusterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.env = default_environments()["prod"]

    def test_fetch_snapshot_uses_selector_and_namespace(self) -> None:
        runner = _ScriptedRunner()
        runner.responses[",".join(CLUSTER_KINDS)] = {
            "items": [{"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "production"}}]
        }
        runner.responses[",".join(NAMESPACED_KINDS)] = {
            "items": [config_map("settings", "production", "prod")]
        }
        cluster = KubectlCluster(runner, clock=self.clock)
        snapshot = cluster.fetch_snapshot(self.env)

        self.assertEqual(snapshot.captured_at, self.clock())
        self.assertIn(ResourceIdentity.of("ConfigMap", "settings", "production"), snapshot)
        self.assertIn(ResourceIdentity.of("Namespace", "production"), snapshot)
        first_args = runner.calls[0][0]
        self.assertIn("-n", first_args)
        self.assertIn("production", first_args)
        self.assertIn("app.kubernetes.io/managed-by=rolloutctl,rollout.io/environment=prod", first_args)

    def test_apply_sends_yaml_on_stdin(self) -> None:
        runner = _ScriptedRunner()
        cluster = KubectlCluster(runner, clock=self.clock)
        document = deployment("web", "production", "prod")
        cluster.apply_action(Action(ActionType.CREATE, ResourceIdentity.from_document(document), after=document))
        args, stdin = runner.calls[0]
        self.assertEqual(args, ["apply", "-f", "-"])
        self.assertEqual(yaml.safe_load(stdin), document)

    def test_apply_failure_keeps_transient_flag(self) -> None:
        runner = _ScriptedRunner(error=KubectlError(["apply"], "i/o timeout"))
        cluster = KubectlCluster(runner, clock=self.clock)
        document = deployment("web", "production", "prod")
        with self.assertRaises(ApplyActionError) as ctx:
            cluster.apply_action(Action(ActionType.UPDATE, ResourceIdentity.from_document(document), after=document))
        self.assertTrue(ctx.exception.transient)

    def test_delete_ignores_missing_objects(self) -> None:
        runner = _ScriptedRunner()
        cluster = KubectlCluster(runner, clock=self.clock)
        cluster.delete_action(Action(ActionType.DELETE, ResourceIdentity.of("ConfigMap", "settings", "production")))
        args, _ = runner.calls[0]
        self.assertEqual(args[:3], ["delete", "configmap", "settings"])
        self.assertIn("--ignore-not-found=true", args)

    def test_ready_count(self) -> None:
        runner = _ScriptedRunner({"deployment": {"status": {"readyReplicas": 2}}, "daemonset": {"status": {"numberReady": 4}}})
        cluster = KubectlCluster(runner, clock=self.clock)
        self.assertEqual(cluster.ready_count(ResourceIdentity.of("Deployment", "web", "production")), 2)
        self.assertEqual(cluster.ready_count(ResourceIdentity.of("DaemonSet", "agent", "production")), 4)

    def test_ready_count_for_missing_workload(self) -> None:
        runner = _ScriptedRunner(error=KubectlError(["get"], 'Error from server (NotFound): deployments "web" not found'))
        cluster = KubectlCluster(runner, clock=self.clock)
        self.assertEqual(cluster.ready_count(ResourceIdentity.of("Deployment", "web", "production")), 0)

    def test_ready_count_surfaces_other_errors(self) -> None:
        runner = _ScriptedRunner(error=KubectlError(["get"], "Unauthorized"))
        cluster = KubectlCluster(runner, clock=self.clock)
        with self.assertRaises(ClusterError):
            cluster.ready_count(ResourceIdentity.of("Deployment", "web", "production"))

    def test_recent_failure_events_window(self) -> None:
        self.clock.now = 1_700_000_000.0
        events = {
            "items": [
                {"involvedObject": {"name": "web-7d9f-abcde"}, "lastTimestamp": "2023-11-14T22:13:10Z"},
                {"involvedObject": {"name": "web"}, "lastTimestamp": "2023-11-14T22:00:00Z"},
                {"involvedObject": {"name": "webhook-1"}, "lastTimestamp": "2023-11-14T22:13:15Z"},
            ]
        }
        runner = _ScriptedRunner({"events": events})
        cluster = KubectlCluster(runner, clock=self.clock)
        count = cluster.recent_failure_events(ResourceIdentity.of("Deployment", "web", "production"), 60.0)
        self.assertEqual(count, 1)

    def test_resource_names(self) -> None:
        self.assertEqual(resource_name("Ingress"), "ingresses")
        self.assertEqual(resource_name("NetworkPolicy"), "networkpolicies")
        self.assertEqual(resource_name("StorageClass"), "storageclasses")
        self.assertEqual(resource_name("Deployment"), "deployments")
        for kind in ("replicasets", "pods", "deployments", "services"):
            self.assertIn(kind, NAMESPACED_KINDS)
        for kind in ("namespaces", "clusterroles", "clusterrolebindings", "customresourcedefinitions"):
            self.assertIn(kind, CLUSTER_KINDS)
            self.assertNotIn(kind, NAMESPACED_KINDS)

    def test_cluster_scoped_and_replica_set_resources_converge(self) -> None:
        dev = default_environments()["dev"]
        role = managed(
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "ClusterRole",
                "metadata": {"name": "reader"},
                "rules": [{"apiGroups": [""], "resources": ["pods"], "verbs": ["get"]}],
            },
            "dev",
        )
        workers = managed(
            {
                "apiVersion": "apps/v1",
                "kind": "ReplicaSet",
                "metadata": {"name": "worker", "namespace": "dev"},
                "spec": {"replicas": 1},
            },
            "dev",
        )
        runner = _ScriptedRunner()
        runner.responses[",".join(CLUSTER_KINDS)] = {"items": [role]}
        runner.responses[",".join(NAMESPACED_KINDS)] = {"items": [workers]}
        cluster = KubectlCluster(runner, clock=self.clock)

        snapshot = cluster.fetch_snapshot(dev)
        result = compute_plan(ManifestSet.from_documents("dev", [role, workers]), snapshot, clock=self.clock)

        self.assertTrue(result.empty, [str(action) for action in result])
        cluster_args = runner.calls[1][0]
        self.assertNotIn("-n", cluster_args)

        removed = compute_plan(ManifestSet.from_documents("dev", [workers]), snapshot, clock=self.clock)
        self.assertEqual(
            [(action.type, action.identity) for action in removed],
            [(ActionType.DELETE, ResourceIdentity.of("ClusterRole", "reader"))],
        )

    def test_environment_context_is_passed_on_every_call(self) -> None:
        prod = dataclasses.replace(self.env, context="prod-admin", kubeconfig="/etc/kube/prod")
        runner = _ScriptedRunner()
        cluster = KubectlCluster(runner, clock=self.clock, environments={"prod": prod})
        document = deployment("web", "production", "prod")
        namespace = managed({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "production"}}, "prod")

        cluster.fetch_snapshot(prod)
        cluster.apply_action(Action(ActionType.CREATE, ResourceIdentity.from_document(document), after=document))
        cluster.delete_action(Action(ActionType.DELETE, ResourceIdentity.from_document(namespace), before=namespace))
        cluster.ready_count(ResourceIdentity.of("Deployment", "web", "production"))
        cluster.recent_failure_events(ResourceIdentity.of("Deployment", "web", "production"), 30.0)

        self.assertEqual(len(runner.calls), 6)
        for args, _ in runner.calls:
            self.assertEqual(args[-4:], ["--context", "prod-admin", "--kubeconfig", "/etc/kube/prod"])

    def test_unknown_namespace_uses_no_context_flags(self) -> None:
        prod = dataclasses.replace(self.env, context="prod-admin")
        runner = _ScriptedRunner()
        cluster = KubectlCluster(runner, clock=self.clock, environments={"prod": prod})
        cluster.ready_count(ResourceIdentity.of("Deployment", "web", "elsewhere"))
        self.assertNotIn("--context", runner.calls[0][0])

    def test_validate_actions_runs_server_dry_run(self) -> None:
        runner = _ScriptedRunner()
        cluster = KubectlCluster(runner, clock=self.clock)
        document = deployment("web", "production", "prod")
        settings = config_map("settings", "production", "prod")
        actions = [
            Action(ActionType.CREATE, ResourceIdentity.from_document(settings), after=settings),
            Action(ActionType.UPDATE, ResourceIdentity.from_document(document), before=document, after=document),
            Action(ActionType.DELETE, ResourceIdentity.of("Service", "old", "production"), before={}),
        ]
        cluster.validate_actions(self.env, actions)

        args, stdin = runner.calls[0]
        self.assertEqual(args, ["apply", "--dry-run=server", "-f", "-"])
        self.assertEqual(list(yaml.safe_load_all(stdin)), [settings, document])

    def test_validate_actions_falls_back_to_client_for_new_namespaces(self) -> None:
        runner = _ScriptedRunner()
        cluster = KubectlCluster(runner, clock=self.clock)
        namespace = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "production"}}
        cluster.validate_actions(
            self.env, [Action(ActionType.CREATE, ResourceIdentity.from_document(namespace), after=namespace)]
        )
        self.assertIn("--dry-run=client", runner.calls[0][0])

    def test_validate_actions_rejection(self) -> None:
        runner = _ScriptedRunner(error=KubectlError(["apply"], 'Deployment.apps "web" is invalid'))
        cluster = KubectlCluster(runner, clock=self.clock)
        document = deployment("web", "production", "prod")
        with self.assertRaises(ManifestRejectedError) as ctx:
            cluster.validate_actions(
                self.env, [Action(ActionType.CREATE, ResourceIdentity.from_document(document), after=document)]
            )
        self.assertEqual(ctx.exception.exit_code, 3)
        self.assertIn("is invalid", str(ctx.exception))

    def test_validate_without_documents_skips_kubectl(self) -> None:
        runner = _ScriptedRunner()
        KubectlCluster(runner, clock=self.clock).validate_actions(self.env, [])
        self.assertEqual(runner.calls, [])


if __name__ == "__main__":
    unittest.main()
