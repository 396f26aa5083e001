import os
import tempfile
import textwrap
import unittest
from pathlib import Path
from unittest import mock

from pydantic import SecretStr

from src.common.config import DEFAULT_PROFILES, OrchestratorConfig, RolloutSettings
from src.common.errors import ConfigError, UnknownEnvironmentError
from src.common.identity import MIN_READY_ANNOTATION, ResourceIdentity, normalise_kind
from src.common.logging import REDACTED, redact_secrets
from src.common.workloads import minimum_ready, split_image


class IdentityTests(unittest.TestCase):
    def test_kind_aliases(self) -> None:
        self.assertEqual(normalise_kind("deploy"), "Deployment")
        self.assertEqual(normalise_kind("CM"), "ConfigMap")
        self.assertEqual(normalise_kind("Widget"), "Widget")
        self.assertEqual(normalise_kind(None), "")

    def test_cluster_scoped_kinds_drop_namespace(self) -> None:
        identity = ResourceIdentity.of("ns", "production", "ignored")
        self.assertEqual(identity, ResourceIdentity("Namespace", "", "production"))
        self.assertEqual(str(identity), "Namespace/production")

    def test_from_document_requires_metadata(self) -> None:
        with self.assertRaises(ValueError):
            ResourceIdentity.from_document({"kind": "ConfigMap"})
        with self.assertRaises(ValueError):
            ResourceIdentity.from_document({"kind": "ConfigMap", "metadata": {}})

    def test_dict_round_trip(self) -> None:
        identity = ResourceIdentity.of("Service", "web", "dev")
        self.assertEqual(ResourceIdentity.from_dict(identity.to_dict()), identity)


class WorkloadTests(unittest.TestCase):
    def test_minimum_ready(self) -> None:
        self.assertEqual(minimum_ready({"spec": {"replicas": 3}}), 3)
        self.assertEqual(minimum_ready({"spec": {}}), 1)
        annotated = {"metadata": {"annotations": {MIN_READY_ANNOTATION: "2"}}, "spec": {"replicas": 5}}
        self.assertEqual(minimum_ready(annotated), 2)

    def test_split_image(self) -> None:
        self.assertEqual(split_image("registry:5000/app:1.0"), ("registry:5000/app", ":1.0"))
        self.assertEqual(split_image("registry:5000/app"), ("registry:5000/app", ""))
        self.assertEqual(split_image("app@sha256:abc"), ("app", "@sha256:abc"))


class ConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.root = Path(tmp.name)

    def _config_file(self, content: str) -> Path:
        path = self.root / "rollout.yaml"
        path.write_text(textwrap.dedent(content).lstrip(), encoding="utf-8")
        return path

    def test_defaults(self) -> None:
        config = OrchestratorConfig()
        self.assertEqual(sorted(config.environments), ["dev", "prod", "stage"])
        prod = config.environment("prod")
        self.assertTrue(prod.requires_confirmation)
        self.assertTrue(prod.strict_validation)
        self.assertEqual(prod.namespace, "production")
        self.assertEqual(config.rollout.stability_window_seconds, 30.0)

    def test_unknown_environment(self) -> None:
        with self.assertRaises(UnknownEnvironmentError) as ctx:
            OrchestratorConfig().environment("qa")
        self.assertEqual(ctx.exception.exit_code, 2)
        self.assertIn("dev", str(ctx.exception))

    def test_load_file(self) -> None:
        path = self._config_file(
            """
            manifests_dir: manifests
            history_db: state/history.db
            profiles:
              tiny:
                requests: {cpu: 50m}
                limits: {cpu: 100m}
            environments:
              dev:
                namespace: dev-team
                resource_profile: tiny
            rollout:
              poll_interval_seconds: 5
              stability_polls: 2
            """
        )
        config = OrchestratorConfig.load(path)
        self.assertEqual(config.manifests_dir, (self.root / "manifests").resolve())
        self.assertEqual(config.history_db, (self.root / "state/history.db").resolve())
        dev = config.environment("dev")
        self.assertEqual(dev.namespace, "dev-team")
        self.assertEqual(dev.resource_profile.limits, {"cpu": "100m"})
        self.assertEqual(config.environment("stage").resource_profile, DEFAULT_PROFILES["medium"])
        self.assertEqual(config.rollout.stability_window_seconds, 10.0)

    def test_load_rejects_bad_input(self) -> None:
        with self.assertRaises(ConfigError):
            OrchestratorConfig.load(self.root / "missing.yaml")
        with self.assertRaises(ConfigError):
            OrchestratorConfig.load(self._config_file("rollout: {poll: 1}\n"))
        with self.assertRaises(UnknownEnvironmentError):
            OrchestratorConfig.load(self._config_file("environments: {qa: {}}\n"))
        with self.assertRaises(ConfigError):
            OrchestratorConfig.load(self._config_file("environments: {dev: {resource_profile: huge}}\n"))
        with self.assertRaises(ConfigError):
            OrchestratorConfig.load(self._config_file("rollout: {poll_interval_seconds: fast}\n"))
        with self.assertRaises(ConfigError):
            OrchestratorConfig.load(self._config_file("rollout: {stability_polls: [3]}\n"))

    def test_rollout_values_are_cast(self) -> None:
        config = OrchestratorConfig.load(self._config_file("rollout: {poll_interval_seconds: \"2.5\", stability_polls: \"4\"}\n"))
        self.assertEqual(config.rollout.poll_interval_seconds, 2.5)
        self.assertEqual(config.rollout.stability_polls, 4)

    def test_kubectl_context_per_environment(self) -> None:
        path = self._config_file(
            """
            backup_dir: saved
            environments:
              prod:
                context: prod-admin
                kubeconfig: /etc/kube/prod
            """
        )
        config = OrchestratorConfig.load(path)
        prod = config.environment("prod")
        self.assertEqual(prod.context, "prod-admin")
        self.assertEqual(prod.kubectl_flags(), ["--context", "prod-admin", "--kubeconfig", "/etc/kube/prod"])
        self.assertTrue(prod.requires_confirmation)
        self.assertEqual(config.environment("dev").kubectl_flags(), [])
        self.assertEqual(config.backup_dir, (self.root / "saved").resolve())

    def test_settings_validation(self) -> None:
        with self.assertRaises(ConfigError):
            RolloutSettings(stability_polls=0)
        with self.assertRaises(ConfigError):
            RolloutSettings(poll_interval_seconds=0)

    def test_environment_variables(self) -> None:
        env = {
            "ROLLOUT_MANIFESTS_DIR": str(self.root / "deploy"),
            "ROLLOUT_POLL_INTERVAL": "2.5",
            "ROLLOUT_LOG_LEVEL": "debug",
            "ROLLOUT_LOG_JSON": "true",
        }
        with mock.patch.dict(os.environ, env, clear=False):
            config = OrchestratorConfig.from_env()
        self.assertEqual(config.manifests_dir, self.root / "deploy")
        self.assertEqual(config.rollout.poll_interval_seconds, 2.5)
        self.assertEqual(config.log_level, "DEBUG")
        self.assertTrue(config.log_json)

    def test_bad_environment_variable(self) -> None:
        with mock.patch.dict(os.environ, {"ROLLOUT_STABILITY_POLLS": "many"}, clear=False):
            with self.assertRaises(ConfigError):
                OrchestratorConfig.from_env()


class RedactionTests(unittest.TestCase):
    def test_secret_values_are_masked(self) -> None:
        event = {
            "event": "secret_written",
            "key": "db_password",
            "value": "hunter2",
            "wrapped": SecretStr("hunter2"),
            "db_password": "hunter2",
            "version": 3,
        }
        redacted = redact_secrets(None, "info", dict(event))
        self.assertEqual(redacted["value"], REDACTED)
        self.assertEqual(redacted["wrapped"], REDACTED)
        self.assertEqual(redacted["db_password"], REDACTED)
        self.assertEqual(redacted["key"], "db_password")
        self.assertEqual(redacted["version"], 3)


if __name__ == "__main__":
    unittest.main()
