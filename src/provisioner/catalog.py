"""Static catalog of the managed resource kinds.

Each kind declares:
- the naming constraint the platform enforces (checked before any network call)
- which desired fields this system manages and compares against the cloud
- which fields are only sent on create (immutable or cloud-owned afterwards)
- which fields are write-only secrets (sent, never observed, never logged)

``build_catalog`` turns a validated DeploymentSpec into the ResourceSpecs of
one run, in the fixed dependency order the reconciler walks.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING

from .cloud import DefinitiveRejection

if TYPE_CHECKING:
    from .models import DeploymentSpec

SERVICE_ACCOUNT_DOMAIN = "iam.gserviceaccount.com"
SECRET_ACCESSOR_ROLE = "roles/secretmanager.secretAccessor"
RUN_INVOKER_ROLE = "roles/run.invoker"
PUBLIC_MEMBER = "allUsers"


class ResourceKind(str, Enum):
    """Managed resource kinds, in dependency order."""

    ARTIFACT_REPOSITORY = "artifact-repository"
    DATABASE_INSTANCE = "database-instance"
    DATABASE = "database"
    DATABASE_USER = "database-user"
    SERVICE_IDENTITY = "service-identity"
    SECRET = "secret"
    IAM_BINDING = "iam-binding"
    COMPUTE_SERVICE = "compute-service"


class InvalidResourceName(DefinitiveRejection):
    """Raised when a name violates the platform's naming constraints."""

    pass


@dataclass(frozen=True)
class KindRule:
    """Naming constraint and field ownership for one resource kind."""

    name_pattern: str
    # None means every desired field that is not create-only or write-only
    managed_fields: tuple[str, ...] | None = None
    create_only_fields: tuple[str, ...] = ()
    write_only_fields: tuple[str, ...] = ()
    # Field families replaced wholesale: observed keys absent from the
    # desired state count as drift
    wholesale_prefixes: tuple[str, ...] = ()
    reserved_names: frozenset[str] = frozenset()
    max_length: int = 255


KIND_RULES: dict[ResourceKind, KindRule] = {
    ResourceKind.ARTIFACT_REPOSITORY: KindRule(
        name_pattern=r"^[a-z]([a-z0-9-]{0,61}[a-z0-9])?$",
        managed_fields=("format", "description"),
        max_length=63,
    ),
    ResourceKind.DATABASE_INSTANCE: KindRule(
        name_pattern=r"^[a-z]([a-z0-9-]{0,96}[a-z0-9])?$",
        managed_fields=("tier", "availabilityType"),
        # Major version upgrades and storage shrinking are out of scope
        create_only_fields=("databaseVersion", "region", "diskSizeGb"),
        max_length=98,
    ),
    ResourceKind.DATABASE: KindRule(
        name_pattern=r"^[A-Za-z_][A-Za-z0-9_-]{0,62}$",
        managed_fields=(),
        max_length=63,
    ),
    ResourceKind.DATABASE_USER: KindRule(
        name_pattern=r"^[A-Za-z_][A-Za-z0-9_.-]{0,62}$",
        managed_fields=(),
        write_only_fields=("password",),
        reserved_names=frozenset(
            {
                "cloudsqladmin",
                "cloudsqlagent",
                "cloudsqlimportexport",
                "cloudsqlreplica",
                "cloudsqlsuperuser",
            }
        ),
        max_length=63,
    ),
    ResourceKind.SERVICE_IDENTITY: KindRule(
        name_pattern=r"^[a-z]([-a-z0-9]{4,28}[a-z0-9])$",
        managed_fields=("displayName",),
        max_length=30,
    ),
    ResourceKind.SECRET: KindRule(
        name_pattern=r"^[A-Za-z0-9_-]{1,255}$",
        managed_fields=(),
        create_only_fields=("replication",),
    ),
    ResourceKind.IAM_BINDING: KindRule(
        name_pattern=r"^(roles/[A-Za-z0-9_.]+|projects/[a-z0-9-]+/roles/[A-Za-z0-9_.]+)$",
        managed_fields=("member",),
    ),
    ResourceKind.COMPUTE_SERVICE: KindRule(
        name_pattern=r"^[a-z]([-a-z0-9]{0,47}[a-z0-9])?$",
        wholesale_prefixes=("env.", "secret.", "volume."),
        max_length=49,
    ),
}


def validate_name(kind: ResourceKind, name: str) -> None:
    """Check a resource name against the platform's naming constraints.

    Raises:
        InvalidResourceName: If the name is empty, too long, reserved or
            does not match the kind's pattern.
    """
    rule = KIND_RULES[kind]
    if not name:
        raise InvalidResourceName(f"{kind.value} name must not be empty")
    if len(name) > rule.max_length:
        raise InvalidResourceName(
            f"{kind.value} name exceeds {rule.max_length} characters: {name}"
        )
    if name in rule.reserved_names:
        raise InvalidResourceName(f"{kind.value} name is reserved by the platform: {name}")
    if not re.match(rule.name_pattern, name):
        raise InvalidResourceName(
            f"{kind.value} name must match pattern {rule.name_pattern}: {name}"
        )


@dataclass(frozen=True)
class ResourceSpec:
    """Desired state of one managed resource.

    Identity is (kind, parent, name). ``parent`` names the resource this one
    lives in (the instance for databases and users, the service for a
    service-level IAM binding); ``None`` means project level.
    """

    kind: ResourceKind
    name: str
    desired_fields: Mapping[str, str] = field(default_factory=dict, hash=False)
    parent_kind: ResourceKind | None = None
    parent: str | None = None
    requires: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "desired_fields", MappingProxyType(dict(self.desired_fields))
        )

    @property
    def key(self) -> str:
        """Stable identity string, used for ordering checks and summaries."""
        if self.parent:
            return f"{self.kind.value}:{self.parent}/{self.name}"
        return f"{self.kind.value}:{self.name}"

    @property
    def rule(self) -> KindRule:
        return KIND_RULES[self.kind]

    @property
    def secret_values(self) -> tuple[str, ...]:
        """Values of write-only fields, for redaction."""
        return tuple(
            self.desired_fields[f]
            for f in self.rule.write_only_fields
            if self.desired_fields.get(f)
        )

    def loggable_fields(self) -> dict[str, str]:
        """Desired fields with write-only values removed."""
        return {
            k: v for k, v in self.desired_fields.items() if k not in self.rule.write_only_fields
        }


@dataclass(frozen=True)
class ResourceState:
    """Observed state: ``present=False`` is Absent, otherwise Present(fields)."""

    present: bool
    observed_fields: Mapping[str, str] = field(default_factory=dict, hash=False)

    @classmethod
    def absent(cls) -> ResourceState:
        return cls(present=False)

    @classmethod
    def of(cls, fields: Mapping[str, str]) -> ResourceState:
        return cls(present=True, observed_fields=dict(fields))


@dataclass(frozen=True)
class ServiceIdentity:
    """Service account principal. The email is always derived, never stored."""

    name: str
    project: str

    @property
    def email(self) -> str:
        return f"{self.name}@{self.project}.{SERVICE_ACCOUNT_DOMAIN}"

    @property
    def member(self) -> str:
        return f"serviceAccount:{self.email}"


@dataclass(frozen=True)
class Catalog:
    """ResourceSpecs of one run plus the identity they are granted to."""

    repository: ResourceSpec
    instance: ResourceSpec
    database: ResourceSpec
    user: ResourceSpec
    identity_spec: ResourceSpec
    identity: ServiceIdentity
    bindings: tuple[ResourceSpec, ...]

    def provisioned_in_order(self) -> list[ResourceSpec]:
        """Specs handled by the ResourceProvisioner before secrets are synced."""
        return [
            self.repository,
            self.instance,
            self.database,
            self.user,
            self.identity_spec,
        ]


def build_catalog(
    deployment: DeploymentSpec,
    project_id: str,
    region: str,
    db_password: str = "",
) -> Catalog:
    """Build the ResourceSpecs of one run from the validated settings."""
    db = deployment.database
    instance_name = db.instance.name

    repository = ResourceSpec(
        kind=ResourceKind.ARTIFACT_REPOSITORY,
        name=deployment.repository.name,
        desired_fields={
            "format": deployment.repository.format,
            "description": deployment.repository.description,
        },
    )
    instance = ResourceSpec(
        kind=ResourceKind.DATABASE_INSTANCE,
        name=instance_name,
        desired_fields={
            "databaseVersion": db.instance.database_version,
            "tier": db.instance.tier,
            "availabilityType": db.instance.availability_type,
            "region": region,
            "diskSizeGb": str(db.instance.disk_size_gb),
        },
    )
    database = ResourceSpec(
        kind=ResourceKind.DATABASE,
        name=db.name,
        parent_kind=ResourceKind.DATABASE_INSTANCE,
        parent=instance_name,
        requires=(instance.key,),
    )
    user = ResourceSpec(
        kind=ResourceKind.DATABASE_USER,
        name=db.user,
        desired_fields={"password": db_password},
        parent_kind=ResourceKind.DATABASE_INSTANCE,
        parent=instance_name,
        requires=(database.key,),
    )

    sa = deployment.service_identity
    identity = ServiceIdentity(name=sa.name, project=project_id)
    identity_spec = ResourceSpec(
        kind=ResourceKind.SERVICE_IDENTITY,
        name=sa.name,
        desired_fields={"displayName": sa.display_name or f"{deployment.service.name} runtime"},
    )
    bindings = tuple(
        ResourceSpec(
            kind=ResourceKind.IAM_BINDING,
            name=role,
            desired_fields={"member": identity.member},
            requires=(identity_spec.key,),
        )
        for role in dict.fromkeys(sa.roles)
    )

    return Catalog(
        repository=repository,
        instance=instance,
        database=database,
        user=user,
        identity_spec=identity_spec,
        identity=identity,
        bindings=bindings,
    )


def invoker_binding(service_name: str, service_key: str) -> ResourceSpec:
    """Public invoker binding on the deployed service."""
    return ResourceSpec(
        kind=ResourceKind.IAM_BINDING,
        name=RUN_INVOKER_ROLE,
        desired_fields={"member": PUBLIC_MEMBER},
        parent_kind=ResourceKind.COMPUTE_SERVICE,
        parent=service_name,
        requires=(service_key,),
    )
