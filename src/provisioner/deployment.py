"""Compute service deployment descriptor and its application.

The descriptor is composed from the outputs of earlier steps (database
connection name, secret names, service identity email) plus static sizing
from the settings file. It is applied as one replace of the service: env
vars, secret references and volume mounts are replaced wholesale, never
merged, so keys from a previous deployment shape do not linger.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from .catalog import ResourceKind, ResourceSpec
from .cloud import DefinitiveRejection
from .models import DeploymentSpec
from .provisioner import Action, ReconcileResult, ResourceProvisioner

logger = logging.getLogger(__name__)

LATEST_VERSION = "latest"
CLOUD_SQL_MOUNT_PATH = "/cloudsql"

# Injected by the platform; a container may not set them
RESERVED_ENV_KEYS = frozenset({"PORT", "K_SERVICE", "K_REVISION", "K_CONFIGURATION"})
ENV_KEY_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"


class DescriptorError(DefinitiveRejection):
    """Raised when a descriptor cannot be applied as composed."""

    pass


@dataclass(frozen=True)
class SecretRef:
    """Reference to a secret version exposed as an env var."""

    secret_name: str
    version: str = LATEST_VERSION

    def __str__(self) -> str:
        return f"{self.secret_name}:{self.version}"


@dataclass(frozen=True)
class ResourceSizing:
    """Compute sizing of the service."""

    memory: str
    cpu: str
    min_instances: int
    max_instances: int
    concurrency: int


@dataclass(frozen=True)
class DeploymentDescriptor:
    """Full desired configuration of the compute service."""

    service_name: str
    image: str
    env_vars: Mapping[str, str]
    secret_refs: Mapping[str, SecretRef]
    resources: ResourceSizing
    service_account: str
    port: int = 5678
    health_check_path: str = "/healthz"
    # mount path -> database connection name
    volume_mounts: Mapping[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """Check env keys before anything is sent.

        Raises:
            DescriptorError: On invalid, reserved or duplicated keys.
        """
        errors: list[str] = []
        for key in list(self.env_vars) + list(self.secret_refs):
            if not re.match(ENV_KEY_PATTERN, key):
                errors.append(f"invalid env key: {key}")
            elif key in RESERVED_ENV_KEYS:
                errors.append(f"env key is reserved by the platform: {key}")

        overlap = sorted(set(self.env_vars) & set(self.secret_refs))
        if overlap:
            errors.append(f"keys set both as plain env and secret: {', '.join(overlap)}")

        if self.resources.min_instances > self.resources.max_instances:
            errors.append("minInstances must not exceed maxInstances")

        if errors:
            raise DescriptorError("Invalid deployment descriptor: " + "; ".join(errors))

    def to_fields(self) -> dict[str, str]:
        """Flatten into the field map compared against the running service."""
        fields = {
            "image": self.image,
            "port": str(self.port),
            "memory": self.resources.memory,
            "cpu": self.resources.cpu,
            "minInstances": str(self.resources.min_instances),
            "maxInstances": str(self.resources.max_instances),
            "concurrency": str(self.resources.concurrency),
            "serviceAccount": self.service_account,
            "healthCheckPath": self.health_check_path,
        }
        fields.update({f"env.{k}": v for k, v in self.env_vars.items()})
        fields.update({f"secret.{k}": str(ref) for k, ref in self.secret_refs.items()})
        fields.update({f"volume.{path}": conn for path, conn in self.volume_mounts.items()})
        return fields

    def to_spec(self, requires: tuple[str, ...] = ()) -> ResourceSpec:
        return ResourceSpec(
            kind=ResourceKind.COMPUTE_SERVICE,
            name=self.service_name,
            desired_fields=self.to_fields(),
            requires=requires,
        )


def connection_name(project_id: str, region: str, instance: str) -> str:
    """Cloud SQL connection name, ``project:region:instance``."""
    return f"{project_id}:{region}:{instance}"


def build_descriptor(
    deployment: DeploymentSpec,
    *,
    project_id: str,
    region: str,
    service_account: str,
    instance_outputs: Mapping[str, str],
    password_secret: str,
    encryption_key_secret: str,
) -> DeploymentDescriptor:
    """Compose the descriptor from settings and prior step outputs.

    Args:
        deployment: Validated settings.
        project_id: Target project.
        region: Target region.
        service_account: Email of the runtime service identity.
        instance_outputs: Observed fields of the database instance.
        password_secret: Name of the database password secret.
        encryption_key_secret: Name of the encryption key secret.

    Raises:
        DescriptorError: If the database host cannot be determined.
    """
    db = deployment.database
    svc = deployment.service
    conn = instance_outputs.get("connectionName") or connection_name(
        project_id, region, db.instance.name
    )

    volume_mounts: dict[str, str] = {}
    if db.connection == "socket":
        db_host = f"{CLOUD_SQL_MOUNT_PATH}/{conn}"
        volume_mounts[CLOUD_SQL_MOUNT_PATH] = conn
    else:
        db_host = db.host or instance_outputs.get("ipAddress", "")
        if not db_host:
            raise DescriptorError(
                "database.connection is 'address' but no host is configured "
                "and the instance reports no IP address"
            )

    env_vars = {
        "DB_TYPE": db.type,
        "DB_HOST": db_host,
        "DB_PORT": str(db.port),
        "DB_NAME": db.name,
        "DB_USER": db.user,
    }
    # Settings-file env may not override the database wiring
    for key, value in svc.env.items():
        env_vars.setdefault(key, value)

    return DeploymentDescriptor(
        service_name=svc.name,
        image=svc.image,
        env_vars=env_vars,
        secret_refs={
            svc.password_env_key: SecretRef(password_secret),
            svc.encryption_key_env_key: SecretRef(encryption_key_secret),
        },
        resources=ResourceSizing(
            memory=svc.memory,
            cpu=svc.cpu,
            min_instances=svc.min_instances,
            max_instances=svc.max_instances,
            concurrency=svc.concurrency,
        ),
        service_account=service_account,
        port=svc.port,
        health_check_path=svc.health_check_path,
        volume_mounts=volume_mounts,
    )


class DeploymentUpdater:
    """Applies a DeploymentDescriptor to the compute service."""

    def __init__(self, provisioner: ResourceProvisioner) -> None:
        self._provisioner = provisioner

    async def apply(
        self, descriptor: DeploymentDescriptor, requires: tuple[str, ...] = ()
    ) -> ReconcileResult:
        """Validate and apply the descriptor as a single replace.

        No rollback is attempted on failure; the control plane keeps serving
        the previous revision.
        """
        try:
            descriptor.validate()
        except DescriptorError as e:
            logger.error(
                "Deployment descriptor rejected",
                extra={"service": descriptor.service_name, "error": str(e)},
            )
            return ReconcileResult(
                kind=ResourceKind.COMPUTE_SERVICE.value,
                name=descriptor.service_name,
                key=descriptor.to_spec().key,
                action=Action.FAILED,
                error=str(e),
                dry_run=self._provisioner.dry_run,
            )

        logger.info(
            "Applying deployment",
            extra={
                "service": descriptor.service_name,
                "image": descriptor.image,
                "env_keys": sorted(descriptor.env_vars),
                "secret_keys": sorted(descriptor.secret_refs),
            },
        )
        return await self._provisioner.reconcile(descriptor.to_spec(requires))
