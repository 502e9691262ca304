"""Google Cloud control-plane mock for integration testing.

Provides an in-memory implementation of the CloudClient protocol so the full
reconciliation sequence runs without network access.

Key Features:
- In-memory state per resource key, secret version logs, IAM grants
- Error injection: transient N times, definitive rejection, create races
- Call log for ordering and idempotence assertions

Usage:
    from gcp_mock import FakeCloudClient

    cloud = FakeCloudClient()
    summary = await Reconciler(config, deployment, cloud).run()
    assert cloud.latest("db-password") == "s3cret"
"""

from .cloud import MOCK_INSTANCE_IP, FakeCloudClient, InjectedFailure

__all__ = [
    "MOCK_INSTANCE_IP",
    "FakeCloudClient",
    "InjectedFailure",
]
