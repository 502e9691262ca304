"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import Any

import pytest
import yaml

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for gcp_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from gcp_mock import FakeCloudClient  # noqa: E402

from provisioner.config import Config  # noqa: E402
from provisioner.models import DeploymentSpec  # noqa: E402

TEST_PROJECT = "test-project-01"
TEST_REGION = "europe-west1"
TEST_DB_PASSWORD = "pw-Xq81-never-logged"
TEST_ENCRYPTION_KEY = "ek-9f3a-never-logged"


def make_settings() -> dict[str, Any]:
    """A complete, valid deployment settings document."""
    return {
        "repository": {"name": "n8n-images"},
        "database": {
            "instance": {"name": "n8n-db", "tier": "db-f1-micro"},
            "name": "n8n",
            "user": "n8n-user",
        },
        "secrets": {"password": "n8n-db-password", "encryptionKey": "n8n-encryption-key"},
        "serviceIdentity": {"name": "n8n-runtime", "roles": ["roles/cloudsql.client"]},
        "service": {
            "name": "n8n",
            "image": "europe-west1-docker.pkg.dev/test-project-01/n8n-images/n8n:1.0",
            "memory": "1Gi",
            "env": {"N8N_HOST": "0.0.0.0"},
        },
    }


@pytest.fixture
def settings() -> dict[str, Any]:
    return make_settings()


@pytest.fixture
def spec_file(tmp_path: Path, settings: dict[str, Any]) -> Path:
    path = tmp_path / "deployment.yaml"
    path.write_text(yaml.dump(settings))
    return path


@pytest.fixture
def deployment(settings: dict[str, Any]) -> DeploymentSpec:
    return DeploymentSpec.model_validate(settings)


@pytest.fixture
def config(spec_file: Path) -> Config:
    return Config(
        project_id=TEST_PROJECT,
        region=TEST_REGION,
        spec_path=spec_file,
        db_password=TEST_DB_PASSWORD,
        encryption_key=TEST_ENCRYPTION_KEY,
        retry_backoff_seconds=0.01,
    )


@pytest.fixture
def cloud() -> FakeCloudClient:
    return FakeCloudClient(project_id=TEST_PROJECT, region=TEST_REGION)


@pytest.fixture
def sleeps() -> list[float]:
    """Records requested sleeps instead of sleeping."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return sleep
