"""Cloud control-plane capability consumed by the provisioner.

The provisioner never talks to a cloud SDK directly. It goes through the
``CloudClient`` protocol below, which has one concrete implementation
(gcp.GcpCloudClient) and an in-memory fake used by the tests.

Outcome model:
- "already exists" on create and "already granted" on a grant are not errors.
  They come back as a tagged ``CallOutcome`` value.
- Transport trouble (network blips, rate limits, 5xx) raises
  ``TransientInfrastructureError``; the caller retries with backoff.
- Anything the control plane rejects for good (invalid name, quota,
  permission) raises ``DefinitiveRejection``; the caller does not retry.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .catalog import ResourceKind, ResourceSpec, ResourceState


class CallOutcome(str, Enum):
    """Non-error results of a mutating call."""

    OK = "ok"
    ALREADY_EXISTS = "already_exists"
    ALREADY_GRANTED = "already_granted"

    @property
    def is_conflict(self) -> bool:
        """Conflicts are ignorable: the desired end state already holds."""
        return self is not CallOutcome.OK


class CloudError(Exception):
    """Base class for control-plane failures."""

    pass


class TransientInfrastructureError(CloudError):
    """Network blip, rate limit or server-side hiccup. Safe to retry."""

    pass


class DefinitiveRejection(CloudError):
    """The control plane refused the request. Retrying will not help."""

    pass


class CloudClient(Protocol):
    """Capability to query and mutate the managed resource kinds."""

    def describe(self, spec: ResourceSpec) -> ResourceState:
        """Return the observed state of the resource identified by ``spec``."""
        ...

    def create(self, spec: ResourceSpec) -> CallOutcome:
        """Create the resource with ``spec.desired_fields``."""
        ...

    def update(self, spec: ResourceSpec) -> CallOutcome:
        """Replace the managed fields of an existing resource."""
        ...

    def grant_access(
        self, kind: ResourceKind, name: str, member: str, role: str
    ) -> CallOutcome:
        """Grant ``role`` on a resource to ``member``."""
        ...

    def add_secret_version(self, name: str, value: str) -> str:
        """Append a version to a secret and return its version id."""
        ...
