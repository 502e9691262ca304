"""End-to-end reconciliation runs against the in-memory control plane."""

from __future__ import annotations

import dataclasses

import pytest
from conftest import TEST_DB_PASSWORD, TEST_ENCRYPTION_KEY
from gcp_mock import FakeCloudClient

from provisioner.catalog import PUBLIC_MEMBER, RUN_INVOKER_ROLE, SECRET_ACCESSOR_ROLE
from provisioner.config import Config
from provisioner.models import DeploymentSpec
from provisioner.provisioner import Action
from provisioner.reconciler import Reconciler, RunSummary

SERVICE_KEY = "compute-service:n8n"
USER_KEY = "database-user:n8n-db/n8n-user"
RUNTIME = "serviceAccount:n8n-runtime@test-project-01.iam.gserviceaccount.com"


async def run_once(
    config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
) -> RunSummary:
    return await Reconciler(config, deployment, cloud, sleep=fake_sleep).run()


class TestFreshTarget:
    """Tests for a run against an empty project."""

    @pytest.mark.asyncio
    async def test_everything_created(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        summary = await run_once(config, deployment, cloud, fake_sleep)

        assert summary.success
        assert summary.exit_code == 0
        assert [r.kind for r in summary.results] == [
            "artifact-repository",
            "database-instance",
            "database",
            "database-user",
            "service-identity",
            "secret",
            "secret",
            "iam-binding",
            "compute-service",
        ]
        assert all(r.action is Action.CREATED for r in summary.results)

    @pytest.mark.asyncio
    async def test_one_version_per_secret(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        await run_once(config, deployment, cloud, fake_sleep)

        assert cloud.secret_versions == {
            "n8n-db-password": [TEST_DB_PASSWORD],
            "n8n-encryption-key": [TEST_ENCRYPTION_KEY],
        }
        for secret in ("n8n-db-password", "n8n-encryption-key"):
            assert cloud.grants[("secret", secret, SECRET_ACCESSOR_ROLE)] == {RUNTIME}

    @pytest.mark.asyncio
    async def test_service_wired_to_prior_outputs(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        await run_once(config, deployment, cloud, fake_sleep)

        service = cloud.resources[SERVICE_KEY]
        assert service["env.DB_HOST"] == "/cloudsql/test-project-01:europe-west1:n8n-db"
        assert service["secret.DB_PASSWORD"] == "n8n-db-password:latest"
        assert service["secret.ENCRYPTION_KEY"] == "n8n-encryption-key:latest"
        assert service["serviceAccount"] == "n8n-runtime@test-project-01.iam.gserviceaccount.com"
        assert RUNTIME in cloud.grants[("project", "test-project-01", "roles/cloudsql.client")]

    @pytest.mark.asyncio
    async def test_secrets_never_logged(
        self,
        config: Config,
        deployment: DeploymentSpec,
        cloud: FakeCloudClient,
        fake_sleep,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        caplog.set_level("DEBUG")

        summary = await run_once(config, deployment, cloud, fake_sleep)

        for record in caplog.records:
            rendered = str(record.__dict__)
            assert TEST_DB_PASSWORD not in rendered
            assert TEST_ENCRYPTION_KEY not in rendered
        assert TEST_DB_PASSWORD not in "\n".join(summary.lines())


class TestConvergence:
    """Tests for re-running against an already reconciled project."""

    @pytest.mark.asyncio
    async def test_second_run_unchanged(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        await run_once(config, deployment, cloud, fake_sleep)
        cloud.calls.clear()

        summary = await run_once(config, deployment, cloud, fake_sleep)

        assert summary.success
        assert all(r.action is Action.UNCHANGED for r in summary.results)
        # Secrets still receive a new version on every run
        assert len(cloud.secret_versions["n8n-db-password"]) == 2
        assert cloud.calls_for("create") == []
        assert cloud.calls_for("update") == []

    @pytest.mark.asyncio
    async def test_password_not_reapplied(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        await run_once(config, deployment, cloud, fake_sleep)
        await run_once(config, deployment, cloud, fake_sleep)

        assert cloud.passwords[USER_KEY] == [TEST_DB_PASSWORD]

    @pytest.mark.asyncio
    async def test_rotation_reapplies_password(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        await run_once(config, deployment, cloud, fake_sleep)

        rotating = dataclasses.replace(config, rotate_credentials=True)
        summary = await run_once(rotating, deployment, cloud, fake_sleep)

        assert summary.by_key()[USER_KEY].action is Action.UPDATED
        assert cloud.passwords[USER_KEY] == [TEST_DB_PASSWORD, TEST_DB_PASSWORD]

    @pytest.mark.asyncio
    async def test_memory_drift_updates_only_the_service(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        """Test that out-of-band drift is corrected and nothing else is touched."""
        await run_once(config, deployment, cloud, fake_sleep)
        cloud.resources[SERVICE_KEY]["memory"] = "512Mi"

        summary = await run_once(config, deployment, cloud, fake_sleep)

        updated = [r.key for r in summary.results if r.action is Action.UPDATED]
        assert updated == [SERVICE_KEY]
        assert cloud.resources[SERVICE_KEY]["memory"] == "1Gi"

    @pytest.mark.asyncio
    async def test_lost_create_race_converges(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        cloud.race_on_create("database-instance:n8n-db")

        summary = await run_once(config, deployment, cloud, fake_sleep)

        assert summary.success


class TestFailureIsolation:
    """Tests for how one failure affects the rest of the run."""

    @pytest.mark.asyncio
    async def test_invalid_late_name_fails_before_any_call(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        """Test that a bad service name is caught before earlier steps are applied."""
        deployment.service.name = "N8N_Service"

        summary = await run_once(config, deployment, cloud, fake_sleep)
        results = summary.by_key()

        assert summary.exit_code == 1
        assert cloud.calls == []
        assert "must match pattern" in (results["compute-service:N8N_Service"].error or "")
        assert all(r.action is Action.FAILED for r in summary.results)
        assert "invalid resource name" in (results["artifact-repository:n8n-images"].error or "")

    @pytest.mark.asyncio
    async def test_invalid_secret_name_fails_before_any_call(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        deployment.secrets.encryption_key = "n8n encryption key"

        summary = await run_once(config, deployment, cloud, fake_sleep)

        assert summary.exit_code == 1
        assert cloud.mutating_calls() == []
        assert "must match pattern" in (
            summary.by_key()["secret:n8n encryption key"].error or ""
        )

    @pytest.mark.asyncio
    async def test_failed_user_blocks_dependents_only(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        cloud.reject("create", USER_KEY, "403 Permission denied on users.insert")

        summary = await run_once(config, deployment, cloud, fake_sleep)
        results = summary.by_key()

        assert summary.exit_code == 1
        assert results[USER_KEY].action is Action.FAILED
        assert "prerequisite failed" in (results["secret:n8n-db-password"].error or "")
        # Independent steps still ran
        assert results["secret:n8n-encryption-key"].success
        assert results["service-identity:n8n-runtime"].success
        # The service needs every prior step; it was never touched
        assert results[SERVICE_KEY].action is Action.FAILED
        assert SERVICE_KEY not in [key for _, key in cloud.calls]

    @pytest.mark.asyncio
    async def test_fatal_secret_failure_halts_run(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        cloud.reject("add_secret_version", "secret:n8n-db-password", "403 denied")

        summary = await run_once(config, deployment, cloud, fake_sleep)
        results = summary.by_key()

        assert summary.exit_code == 1
        assert results["secret:n8n-db-password"].fatal is True
        halted = [r for r in summary.results if "run halted" in (r.error or "")]
        assert [r.key for r in halted] == [
            "secret:n8n-encryption-key",
            "iam-binding:roles/cloudsql.client",
            SERVICE_KEY,
        ]
        assert cloud.calls_for("add_secret_version") == ["secret:n8n-db-password"]

    @pytest.mark.asyncio
    async def test_address_connection_uses_instance_ip(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        """Test that the instance IP is used when no host is configured."""
        deployment.database.connection = "address"

        summary = await run_once(config, deployment, cloud, fake_sleep)

        assert summary.success
        assert cloud.resources[SERVICE_KEY]["env.DB_HOST"] == "10.20.0.5"
        assert not any(k.startswith("volume.") for k in cloud.resources[SERVICE_KEY])


class TestDryRun:
    """Tests for planning without changes."""

    @pytest.mark.asyncio
    async def test_fresh_target_plans_creates(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        planning = dataclasses.replace(config, dry_run=True)

        summary = await run_once(planning, deployment, cloud, fake_sleep)

        assert summary.dry_run is True
        assert all(r.action is Action.CREATED for r in summary.results)
        assert all(line.endswith("(planned)") for line in summary.lines())
        assert cloud.mutating_calls() == []
        assert cloud.resources == {}

    @pytest.mark.asyncio
    async def test_reconciled_target_plans_nothing(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        await run_once(config, deployment, cloud, fake_sleep)
        cloud.calls.clear()

        planning = dataclasses.replace(config, dry_run=True)
        summary = await run_once(planning, deployment, cloud, fake_sleep)

        assert all(r.action is Action.UNCHANGED for r in summary.results)
        assert cloud.mutating_calls() == []


class TestPublicAccess:
    """Tests for unauthenticated invocation."""

    @pytest.mark.asyncio
    async def test_invoker_binding_added(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        deployment.service.allow_unauthenticated = True

        summary = await run_once(config, deployment, cloud, fake_sleep)

        assert summary.results[-1].key == f"iam-binding:n8n/{RUN_INVOKER_ROLE}"
        assert summary.results[-1].action is Action.CREATED
        assert PUBLIC_MEMBER in cloud.grants[("compute-service", "n8n", RUN_INVOKER_ROLE)]

    @pytest.mark.asyncio
    async def test_private_by_default(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        await run_once(config, deployment, cloud, fake_sleep)

        assert ("compute-service", "n8n", RUN_INVOKER_ROLE) not in cloud.grants


class TestRunSummary:
    """Tests for RunSummary reporting."""

    @pytest.mark.asyncio
    async def test_counts_and_lines(
        self, config: Config, deployment: DeploymentSpec, cloud: FakeCloudClient, fake_sleep
    ) -> None:
        summary = await run_once(config, deployment, cloud, fake_sleep)

        assert summary.counts() == {"Created": 9, "Updated": 0, "Unchanged": 0, "Failed": 0}
        assert any("version=1" in line for line in summary.lines())
        assert summary.end_time is not None
