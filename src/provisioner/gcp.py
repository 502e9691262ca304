"""Google Cloud implementation of the CloudClient capability.

Every method is synchronous and blocking; the provisioner runs them in the
default executor. SDK exceptions are translated into the outcome model of
cloud.py at this boundary, nowhere else:

- AlreadyExists / Conflict (HTTP 409) on create -> CallOutcome.ALREADY_EXISTS
- NotFound (HTTP 404) on describe -> ResourceState.absent()
- Unavailable, deadline, 5xx, 429, aborted, transport errors -> transient
- Everything else the API rejects -> DefinitiveRejection

Cloud SQL has no gRPC client library, so instances, databases and users go
through the discovery-based Cloud SQL Admin API (v1beta4) and its long
running operations are polled here.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from google.api_core import exceptions as google_exceptions
from google.auth.credentials import Credentials
from google.auth.exceptions import TransportError
from google.cloud import artifactregistry_v1, iam_admin_v1, resourcemanager_v3, run_v2
from google.cloud import secretmanager
from google.protobuf import field_mask_pb2
from googleapiclient import discovery
from googleapiclient.errors import HttpError

from .catalog import ResourceKind, ResourceSpec, ResourceState, ServiceIdentity
from .cloud import CallOutcome, DefinitiveRejection, TransientInfrastructureError
from .config import DEFAULT_OPERATION_TIMEOUT_SECONDS, OPERATION_POLL_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_API_ERRORS: tuple[type[Exception], ...] = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    google_exceptions.TooManyRequests,
    google_exceptions.Aborted,
    google_exceptions.BadGateway,
    google_exceptions.GatewayTimeout,
)

TRANSIENT_HTTP_STATUSES = frozenset({429, 500, 502, 503, 504})

CONTAINER_NAME = "app"
PROBE_PERIOD_SECONDS = 10
STARTUP_PROBE_FAILURE_THRESHOLD = 30

_RAISE = object()
_CONFLICT = object()


def _is_conflict(error: Exception) -> bool:
    # Aborted is a Conflict subclass but means a concurrent modification
    return isinstance(error, google_exceptions.Conflict) and not isinstance(
        error, google_exceptions.Aborted
    )


def _http_status(error: HttpError) -> int:
    return int(getattr(error.resp, "status", 0) or 0)


def _translate(error: Exception, operation: str, resource: str) -> Exception:
    """Map an SDK exception onto the transient/definitive taxonomy."""
    message = f"{operation} {resource}: {error}"
    if isinstance(error, TransportError):
        return TransientInfrastructureError(message)
    if isinstance(error, HttpError):
        if _http_status(error) in TRANSIENT_HTTP_STATUSES:
            return TransientInfrastructureError(message)
        return DefinitiveRejection(message)
    if isinstance(error, TRANSIENT_API_ERRORS):
        return TransientInfrastructureError(message)
    return DefinitiveRejection(message)


@dataclass
class GcpClients:
    """SDK clients used by GcpCloudClient."""

    run: Any
    secrets: Any
    iam: Any
    artifacts: Any
    projects: Any
    sqladmin: Any

    @classmethod
    def create(cls, credentials: Credentials | None = None) -> GcpClients:
        return cls(
            run=run_v2.ServicesClient(credentials=credentials),
            secrets=secretmanager.SecretManagerServiceClient(credentials=credentials),
            iam=iam_admin_v1.IAMClient(credentials=credentials),
            artifacts=artifactregistry_v1.ArtifactRegistryClient(credentials=credentials),
            projects=resourcemanager_v3.ProjectsClient(credentials=credentials),
            sqladmin=discovery.build(
                "sqladmin", "v1beta4", credentials=credentials, cache_discovery=False
            ),
        )


class GcpCloudClient:
    """CloudClient backed by the Google Cloud SDKs."""

    def __init__(
        self,
        project_id: str,
        region: str,
        clients: GcpClients,
        operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        poll_interval_seconds: float = OPERATION_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._project = project_id
        self._region = region
        self._clients = clients
        self._timeout = operation_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Resource paths
    # ------------------------------------------------------------------

    @property
    def _location(self) -> str:
        return f"projects/{self._project}/locations/{self._region}"

    def _repository_path(self, name: str) -> str:
        return f"{self._location}/repositories/{name}"

    def _service_path(self, name: str) -> str:
        return f"{self._location}/services/{name}"

    def _secret_path(self, name: str) -> str:
        return f"projects/{self._project}/secrets/{name}"

    def _service_account_path(self, name: str) -> str:
        email = ServiceIdentity(name=name, project=self._project).email
        return f"projects/{self._project}/serviceAccounts/{email}"

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------

    def _call(
        self,
        operation: str,
        resource: str,
        fn: Callable[[], T],
        *,
        conflict: Any = _RAISE,
        not_found: Any = _RAISE,
    ) -> Any:
        """Invoke an SDK call, mapping 409/404 to values when requested."""
        try:
            return fn()
        except google_exceptions.GoogleAPICallError as e:
            if conflict is not _RAISE and _is_conflict(e):
                return conflict
            if not_found is not _RAISE and isinstance(e, google_exceptions.NotFound):
                return not_found
            raise _translate(e, operation, resource) from e
        except HttpError as e:
            status = _http_status(e)
            if conflict is not _RAISE and status == 409:
                return conflict
            if not_found is not _RAISE and status == 404:
                return not_found
            raise _translate(e, operation, resource) from e
        except TransportError as e:
            raise _translate(e, operation, resource) from e

    # ------------------------------------------------------------------
    # CloudClient
    # ------------------------------------------------------------------

    def describe(self, spec: ResourceSpec) -> ResourceState:
        match spec.kind:
            case ResourceKind.ARTIFACT_REPOSITORY:
                return self._describe_repository(spec)
            case ResourceKind.DATABASE_INSTANCE:
                return self._describe_instance(spec)
            case ResourceKind.DATABASE:
                return self._describe_database(spec)
            case ResourceKind.DATABASE_USER:
                return self._describe_user(spec)
            case ResourceKind.SERVICE_IDENTITY:
                return self._describe_service_account(spec)
            case ResourceKind.SECRET:
                return self._describe_secret(spec)
            case ResourceKind.IAM_BINDING:
                return self._describe_binding(spec)
            case ResourceKind.COMPUTE_SERVICE:
                return self._describe_service(spec)
        raise DefinitiveRejection(f"Unsupported resource kind: {spec.kind}")

    def create(self, spec: ResourceSpec) -> CallOutcome:
        logger.info(
            "Creating resource",
            extra={"resource": spec.key, "fields": spec.loggable_fields()},
        )
        match spec.kind:
            case ResourceKind.ARTIFACT_REPOSITORY:
                return self._create_repository(spec)
            case ResourceKind.DATABASE_INSTANCE:
                return self._create_instance(spec)
            case ResourceKind.DATABASE:
                return self._create_database(spec)
            case ResourceKind.DATABASE_USER:
                return self._create_user(spec)
            case ResourceKind.SERVICE_IDENTITY:
                return self._create_service_account(spec)
            case ResourceKind.SECRET:
                return self._create_secret(spec)
            case ResourceKind.IAM_BINDING:
                return self._apply_binding(spec)
            case ResourceKind.COMPUTE_SERVICE:
                return self._create_service(spec)
        raise DefinitiveRejection(f"Unsupported resource kind: {spec.kind}")

    def update(self, spec: ResourceSpec) -> CallOutcome:
        logger.info(
            "Updating resource",
            extra={"resource": spec.key, "fields": spec.loggable_fields()},
        )
        match spec.kind:
            case ResourceKind.ARTIFACT_REPOSITORY:
                return self._update_repository(spec)
            case ResourceKind.DATABASE_INSTANCE:
                return self._update_instance(spec)
            case ResourceKind.DATABASE_USER:
                return self._update_user(spec)
            case ResourceKind.SERVICE_IDENTITY:
                return self._update_service_account(spec)
            case ResourceKind.IAM_BINDING:
                return self._apply_binding(spec)
            case ResourceKind.COMPUTE_SERVICE:
                return self._update_service(spec)
            case ResourceKind.DATABASE | ResourceKind.SECRET:
                # Nothing managed beyond existence
                return CallOutcome.OK
        raise DefinitiveRejection(f"Unsupported resource kind: {spec.kind}")

    def grant_access(
        self, kind: ResourceKind, name: str, member: str, role: str
    ) -> CallOutcome:
        match kind:
            case ResourceKind.SECRET:
                client = self._clients.secrets
                resource = self._secret_path(name)
            case ResourceKind.COMPUTE_SERVICE:
                client = self._clients.run
                resource = self._service_path(name)
            case _:
                raise DefinitiveRejection(f"Access grants are not supported on {kind.value}")
        return self._add_policy_member(client, resource, role, member)

    def add_secret_version(self, name: str, value: str) -> str:
        path = self._secret_path(name)
        response = self._call(
            "add_secret_version",
            path,
            lambda: self._clients.secrets.add_secret_version(
                request={"parent": path, "payload": {"data": value.encode("UTF-8")}}
            ),
        )
        return response.name.rsplit("/", 1)[-1]

    # ------------------------------------------------------------------
    # IAM policies (project, secret, service)
    # ------------------------------------------------------------------

    def _read_policy(self, client: Any, resource: str) -> Any:
        return self._call(
            "get_iam_policy",
            resource,
            lambda: client.get_iam_policy(request={"resource": resource}),
        )

    def _add_policy_member(
        self, client: Any, resource: str, role: str, member: str
    ) -> CallOutcome:
        """Read-modify-write of an IAM policy; the etag guards concurrent writers."""
        policy = self._read_policy(client, resource)
        for binding in policy.bindings:
            if binding.role == role:
                if member in binding.members:
                    return CallOutcome.ALREADY_GRANTED
                binding.members.append(member)
                break
        else:
            policy.bindings.add(role=role, members=[member])

        self._call(
            "set_iam_policy",
            resource,
            lambda: client.set_iam_policy(request={"resource": resource, "policy": policy}),
        )
        return CallOutcome.OK

    def _binding_target(self, spec: ResourceSpec) -> tuple[Any, str]:
        if spec.parent_kind is ResourceKind.COMPUTE_SERVICE and spec.parent:
            return self._clients.run, self._service_path(spec.parent)
        return self._clients.projects, f"projects/{self._project}"

    def _describe_binding(self, spec: ResourceSpec) -> ResourceState:
        client, resource = self._binding_target(spec)
        member = spec.desired_fields.get("member", "")
        policy = self._call(
            "get_iam_policy",
            resource,
            lambda: client.get_iam_policy(request={"resource": resource}),
            not_found=None,
        )
        if policy is None:
            return ResourceState.absent()
        for binding in policy.bindings:
            if binding.role == spec.name and member in binding.members:
                return ResourceState.of({"member": member})
        return ResourceState.absent()

    def _apply_binding(self, spec: ResourceSpec) -> CallOutcome:
        client, resource = self._binding_target(spec)
        return self._add_policy_member(
            client, resource, spec.name, spec.desired_fields.get("member", "")
        )

    # ------------------------------------------------------------------
    # Artifact Registry
    # ------------------------------------------------------------------

    def _describe_repository(self, spec: ResourceSpec) -> ResourceState:
        path = self._repository_path(spec.name)
        repo = self._call(
            "get_repository",
            path,
            lambda: self._clients.artifacts.get_repository(name=path),
            not_found=None,
        )
        if repo is None:
            return ResourceState.absent()
        return ResourceState.of(
            {
                "format": artifactregistry_v1.Repository.Format(repo.format_).name,
                "description": repo.description,
            }
        )

    def _create_repository(self, spec: ResourceSpec) -> CallOutcome:
        repository = artifactregistry_v1.Repository(
            format_=artifactregistry_v1.Repository.Format[spec.desired_fields["format"]],
            description=spec.desired_fields.get("description", ""),
        )

        def create() -> CallOutcome:
            self._clients.artifacts.create_repository(
                parent=self._location,
                repository_id=spec.name,
                repository=repository,
            ).result(timeout=self._timeout)
            return CallOutcome.OK

        return self._call(
            "create_repository", spec.key, create, conflict=CallOutcome.ALREADY_EXISTS
        )

    def _update_repository(self, spec: ResourceSpec) -> CallOutcome:
        repository = artifactregistry_v1.Repository(
            name=self._repository_path(spec.name),
            description=spec.desired_fields.get("description", ""),
        )
        # Format is immutable after creation
        self._call(
            "update_repository",
            spec.key,
            lambda: self._clients.artifacts.update_repository(
                repository=repository,
                update_mask=field_mask_pb2.FieldMask(paths=["description"]),
            ),
        )
        return CallOutcome.OK

    # ------------------------------------------------------------------
    # Cloud SQL (discovery API)
    # ------------------------------------------------------------------

    def _wait_for_sql_operation(self, operation: Mapping[str, Any], resource: str) -> None:
        """Poll a Cloud SQL operation until DONE or the timeout elapses."""
        name = operation["name"]
        deadline = time.monotonic() + self._timeout
        current = operation

        while current.get("status") != "DONE":
            if time.monotonic() >= deadline:
                raise TransientInfrastructureError(
                    f"Cloud SQL operation {name} on {resource} did not finish "
                    f"within {self._timeout}s"
                )
            self._sleep(self._poll_interval)
            current = self._call(
                "get_operation",
                resource,
                lambda: self._clients.sqladmin.operations()
                .get(project=self._project, operation=name)
                .execute(),
            )

        errors = current.get("error", {}).get("errors", [])
        if errors:
            detail = "; ".join(e.get("message", e.get("code", "")) for e in errors)
            raise DefinitiveRejection(f"Cloud SQL operation on {resource} failed: {detail}")

    def _sql_mutation(
        self,
        operation: str,
        resource: str,
        fn: Callable[[], Mapping[str, Any]],
        *,
        creates: bool = False,
    ) -> CallOutcome:
        """Start a Cloud SQL operation and wait for it to finish.

        A 409 on an insert means the resource already exists. On any other
        mutation it means another operation holds the instance and nothing
        was applied.
        """
        started = self._call(operation, resource, fn, conflict=_CONFLICT)
        if started is _CONFLICT:
            if creates:
                return CallOutcome.ALREADY_EXISTS
            raise TransientInfrastructureError(
                f"{operation} on {resource} conflicts with an operation in progress"
            )
        self._wait_for_sql_operation(started, resource)
        return CallOutcome.OK

    def _describe_instance(self, spec: ResourceSpec) -> ResourceState:
        instance = self._call(
            "get_instance",
            spec.key,
            lambda: self._clients.sqladmin.instances()
            .get(project=self._project, instance=spec.name)
            .execute(),
            not_found=None,
        )
        if instance is None:
            return ResourceState.absent()

        settings = instance.get("settings", {})
        fields = {
            "databaseVersion": instance.get("databaseVersion", ""),
            "region": instance.get("region", ""),
            "tier": settings.get("tier", ""),
            "availabilityType": settings.get("availabilityType", ""),
            "diskSizeGb": str(settings.get("dataDiskSizeGb", "")),
            "connectionName": instance.get("connectionName", ""),
            "state": instance.get("state", ""),
        }
        for address in instance.get("ipAddresses", []):
            if address.get("type") == "PRIMARY":
                fields["ipAddress"] = address.get("ipAddress", "")
                break
        return ResourceState.of(fields)

    def _create_instance(self, spec: ResourceSpec) -> CallOutcome:
        desired = spec.desired_fields
        body = {
            "name": spec.name,
            "databaseVersion": desired["databaseVersion"],
            "region": desired.get("region", self._region),
            "settings": {
                "tier": desired["tier"],
                "availabilityType": desired["availabilityType"],
                "dataDiskSizeGb": desired["diskSizeGb"],
            },
        }
        return self._sql_mutation(
            "insert_instance",
            spec.key,
            lambda: self._clients.sqladmin.instances()
            .insert(project=self._project, body=body)
            .execute(),
            creates=True,
        )

    def _update_instance(self, spec: ResourceSpec) -> CallOutcome:
        body = {
            "settings": {
                "tier": spec.desired_fields["tier"],
                "availabilityType": spec.desired_fields["availabilityType"],
            }
        }
        return self._sql_mutation(
            "patch_instance",
            spec.key,
            lambda: self._clients.sqladmin.instances()
            .patch(project=self._project, instance=spec.name, body=body)
            .execute(),
        )

    def _describe_database(self, spec: ResourceSpec) -> ResourceState:
        database = self._call(
            "get_database",
            spec.key,
            lambda: self._clients.sqladmin.databases()
            .get(project=self._project, instance=spec.parent, database=spec.name)
            .execute(),
            not_found=None,
        )
        if database is None:
            return ResourceState.absent()
        return ResourceState.of({"charset": database.get("charset", "")})

    def _create_database(self, spec: ResourceSpec) -> CallOutcome:
        body = {"name": spec.name, "instance": spec.parent, "project": self._project}
        return self._sql_mutation(
            "insert_database",
            spec.key,
            lambda: self._clients.sqladmin.databases()
            .insert(project=self._project, instance=spec.parent, body=body)
            .execute(),
            creates=True,
        )

    def _describe_user(self, spec: ResourceSpec) -> ResourceState:
        user = self._call(
            "get_user",
            spec.key,
            lambda: self._clients.sqladmin.users()
            .get(project=self._project, instance=spec.parent, name=spec.name)
            .execute(),
            not_found=None,
        )
        if user is None:
            return ResourceState.absent()
        # The password is write-only and never returned
        return ResourceState.of({"type": user.get("type", "BUILT_IN")})

    def _create_user(self, spec: ResourceSpec) -> CallOutcome:
        body = {"name": spec.name, "password": spec.desired_fields.get("password", "")}
        return self._sql_mutation(
            "insert_user",
            spec.key,
            lambda: self._clients.sqladmin.users()
            .insert(project=self._project, instance=spec.parent, body=body)
            .execute(),
            creates=True,
        )

    def _update_user(self, spec: ResourceSpec) -> CallOutcome:
        body = {"name": spec.name, "password": spec.desired_fields.get("password", "")}
        return self._sql_mutation(
            "update_user",
            spec.key,
            lambda: self._clients.sqladmin.users()
            .update(project=self._project, instance=spec.parent, name=spec.name, body=body)
            .execute(),
        )

    # ------------------------------------------------------------------
    # IAM service accounts
    # ------------------------------------------------------------------

    def _describe_service_account(self, spec: ResourceSpec) -> ResourceState:
        path = self._service_account_path(spec.name)
        account = self._call(
            "get_service_account",
            spec.key,
            lambda: self._clients.iam.get_service_account(name=path),
            not_found=None,
        )
        if account is None:
            return ResourceState.absent()
        return ResourceState.of({"displayName": account.display_name, "email": account.email})

    def _create_service_account(self, spec: ResourceSpec) -> CallOutcome:
        request = iam_admin_v1.CreateServiceAccountRequest(
            name=f"projects/{self._project}",
            account_id=spec.name,
            service_account=iam_admin_v1.ServiceAccount(
                display_name=spec.desired_fields.get("displayName", "")
            ),
        )

        def create() -> CallOutcome:
            self._clients.iam.create_service_account(request=request)
            return CallOutcome.OK

        return self._call(
            "create_service_account", spec.key, create, conflict=CallOutcome.ALREADY_EXISTS
        )

    def _update_service_account(self, spec: ResourceSpec) -> CallOutcome:
        request = iam_admin_v1.PatchServiceAccountRequest(
            service_account=iam_admin_v1.ServiceAccount(
                name=self._service_account_path(spec.name),
                display_name=spec.desired_fields.get("displayName", ""),
            ),
            update_mask=field_mask_pb2.FieldMask(paths=["display_name"]),
        )
        self._call(
            "patch_service_account",
            spec.key,
            lambda: self._clients.iam.patch_service_account(request=request),
        )
        return CallOutcome.OK

    # ------------------------------------------------------------------
    # Secret Manager
    # ------------------------------------------------------------------

    def _describe_secret(self, spec: ResourceSpec) -> ResourceState:
        path = self._secret_path(spec.name)
        secret = self._call(
            "get_secret",
            spec.key,
            lambda: self._clients.secrets.get_secret(request={"name": path}),
            not_found=None,
        )
        if secret is None:
            return ResourceState.absent()
        replication = "automatic" if "automatic" in secret.replication else "user-managed"
        return ResourceState.of({"replication": replication})

    def _create_secret(self, spec: ResourceSpec) -> CallOutcome:
        def create() -> CallOutcome:
            self._clients.secrets.create_secret(
                request={
                    "parent": f"projects/{self._project}",
                    "secret_id": spec.name,
                    "secret": {"replication": {"automatic": {}}},
                }
            )
            return CallOutcome.OK

        return self._call("create_secret", spec.key, create, conflict=CallOutcome.ALREADY_EXISTS)

    # ------------------------------------------------------------------
    # Cloud Run
    # ------------------------------------------------------------------

    def _describe_service(self, spec: ResourceSpec) -> ResourceState:
        path = self._service_path(spec.name)
        service = self._call(
            "get_service",
            spec.key,
            lambda: self._clients.run.get_service(name=path),
            not_found=None,
        )
        if service is None:
            return ResourceState.absent()
        return ResourceState.of(flatten_service(service))

    def _create_service(self, spec: ResourceSpec) -> CallOutcome:
        service = build_service(spec.desired_fields)

        def create() -> CallOutcome:
            self._clients.run.create_service(
                parent=self._location, service=service, service_id=spec.name
            ).result(timeout=self._timeout)
            return CallOutcome.OK

        return self._call("create_service", spec.key, create, conflict=CallOutcome.ALREADY_EXISTS)

    def _update_service(self, spec: ResourceSpec) -> CallOutcome:
        service = build_service(spec.desired_fields, name=self._service_path(spec.name))
        # No update mask: the template is replaced as a whole
        self._call(
            "update_service",
            spec.key,
            lambda: self._clients.run.update_service(service=service).result(
                timeout=self._timeout
            ),
        )
        return CallOutcome.OK


def _split_secret_ref(value: str) -> tuple[str, str]:
    secret, _, version = value.partition(":")
    return secret, version or "latest"


def build_service(fields: Mapping[str, str], name: str = "") -> run_v2.Service:
    """Build a complete Cloud Run service from flattened descriptor fields."""
    port = int(fields["port"])
    health_path = fields.get("healthCheckPath", "/")

    env: list[run_v2.EnvVar] = []
    volume_mounts: list[run_v2.VolumeMount] = []
    volumes: list[run_v2.Volume] = []

    for key in sorted(fields):
        value = fields[key]
        if key.startswith("env."):
            env.append(run_v2.EnvVar(name=key[len("env."):], value=value))
        elif key.startswith("secret."):
            secret, version = _split_secret_ref(value)
            env.append(
                run_v2.EnvVar(
                    name=key[len("secret."):],
                    value_source=run_v2.EnvVarSource(
                        secret_key_ref=run_v2.SecretKeySelector(secret=secret, version=version)
                    ),
                )
            )
        elif key.startswith("volume."):
            volume_name = f"cloudsql-{len(volumes)}"
            volume_mounts.append(
                run_v2.VolumeMount(name=volume_name, mount_path=key[len("volume."):])
            )
            volumes.append(
                run_v2.Volume(
                    name=volume_name,
                    cloud_sql_instance=run_v2.CloudSqlInstance(instances=value.split(",")),
                )
            )

    container = run_v2.Container(
        name=CONTAINER_NAME,
        image=fields["image"],
        ports=[run_v2.ContainerPort(container_port=port, name="http1")],
        env=env,
        resources=run_v2.ResourceRequirements(
            limits={"cpu": fields["cpu"], "memory": fields["memory"]}
        ),
        volume_mounts=volume_mounts,
        startup_probe=run_v2.Probe(
            http_get=run_v2.HTTPGetAction(path=health_path, port=port),
            period_seconds=PROBE_PERIOD_SECONDS,
            failure_threshold=STARTUP_PROBE_FAILURE_THRESHOLD,
        ),
        liveness_probe=run_v2.Probe(
            http_get=run_v2.HTTPGetAction(path=health_path, port=port),
            period_seconds=PROBE_PERIOD_SECONDS,
        ),
    )

    template = run_v2.RevisionTemplate(
        containers=[container],
        volumes=volumes,
        service_account=fields.get("serviceAccount", ""),
        max_instance_request_concurrency=int(fields["concurrency"]),
        scaling=run_v2.RevisionScaling(
            min_instance_count=int(fields["minInstances"]),
            max_instance_count=int(fields["maxInstances"]),
        ),
    )
    return run_v2.Service(name=name, template=template)


def flatten_service(service: run_v2.Service) -> dict[str, str]:
    """Inverse of build_service for the fields this system manages."""
    template = service.template
    fields: dict[str, str] = {
        "serviceAccount": template.service_account,
        "concurrency": str(template.max_instance_request_concurrency),
        "minInstances": str(template.scaling.min_instance_count),
        "maxInstances": str(template.scaling.max_instance_count),
    }
    if service.uri:
        fields["uri"] = service.uri
    if not template.containers:
        return fields

    container = template.containers[0]
    fields["image"] = container.image
    if container.ports:
        fields["port"] = str(container.ports[0].container_port)
    limits = container.resources.limits
    if "memory" in limits:
        fields["memory"] = limits["memory"]
    if "cpu" in limits:
        fields["cpu"] = limits["cpu"]
    if container.startup_probe.http_get.path:
        fields["healthCheckPath"] = container.startup_probe.http_get.path

    for var in container.env:
        ref = var.value_source.secret_key_ref
        if ref.secret:
            fields[f"secret.{var.name}"] = f"{ref.secret}:{ref.version or 'latest'}"
        else:
            fields[f"env.{var.name}"] = var.value

    instances_by_volume = {
        v.name: ",".join(v.cloud_sql_instance.instances)
        for v in template.volumes
        if v.cloud_sql_instance.instances
    }
    for mount in container.volume_mounts:
        if mount.name in instances_by_volume:
            fields[f"volume.{mount.mount_path}"] = instances_by_volume[mount.name]
    return fields
