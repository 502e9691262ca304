"""One full reconciliation run over the fixed resource sequence.

Order (linear, never parallel; later steps consume earlier outputs):
1. Artifact repository
2. Database instance -> database -> database user
3. Service identity
4. Secrets (database password, encryption key), readable by the identity
5. Project IAM bindings for the identity
6. Compute service deployment
7. Public invoker binding (only when unauthenticated access is allowed)

Every name is validated before the first cloud call; one invalid name fails
the whole run with nothing applied. Each step reports its own
ReconcileResult. A step whose prerequisite Failed is reported Failed without
any cloud call. A fatal failure (a secret version that could not be written)
halts the run; remaining steps are reported as not attempted. Re-running
converges because every step is idempotent.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .catalog import (
    Catalog,
    InvalidResourceName,
    ResourceKind,
    ResourceSpec,
    build_catalog,
    invoker_binding,
    validate_name,
)
from .cloud import CloudClient
from .config import Config
from .deployment import DeploymentUpdater, DescriptorError, build_descriptor
from .diff_normalizer import DiffNormalizer
from .models import DeploymentSpec
from .provisioner import Action, ReconcileResult, ResourceProvisioner, SleepFn
from .secret_sync import SecretRecord, SecretSynchronizer
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Per-resource results of one run, in execution order."""

    results: list[ReconcileResult] = field(default_factory=list)
    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def counts(self) -> dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for result in self.results:
            counts[result.action.value] += 1
        return counts

    def by_key(self) -> dict[str, ReconcileResult]:
        return {r.key: r for r in self.results}

    def lines(self) -> list[str]:
        """Human-readable summary, one line per resource."""
        lines = []
        for r in self.results:
            line = f"{r.kind:<20} {r.name:<40} {r.action.value}"
            if r.dry_run:
                line += " (planned)"
            if r.version:
                line += f" version={r.version}"
            if r.error:
                line += f" error={r.error}"
            lines.append(line)
        return lines


class Reconciler:
    """Runs the fixed provisioning sequence once."""

    def __init__(
        self,
        config: Config,
        deployment: DeploymentSpec,
        client: CloudClient,
        *,
        sleep: SleepFn | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            config: Validated run configuration (project, region, secrets).
            deployment: Validated deployment settings.
            client: Cloud control-plane capability.
            sleep: Awaitable sleep used between retries, injectable for tests.
        """
        self._config = config
        self._deployment = deployment
        self._provisioner = ResourceProvisioner(
            client,
            max_attempts=config.retry_max_attempts,
            backoff_seconds=config.retry_backoff_seconds,
            dry_run=config.dry_run,
            rotate_credentials=config.rotate_credentials,
            secret_values=config.secret_values,
            sleep=sleep,
            normalizer=DiffNormalizer(),
        )
        self._secrets = SecretSynchronizer(self._provisioner)
        self._updater = DeploymentUpdater(self._provisioner)
        self._catalog: Catalog = build_catalog(
            deployment,
            project_id=config.project_id,
            region=config.region,
            db_password=config.db_password,
        )
        self._summary = RunSummary(dry_run=config.dry_run)
        self._results: dict[str, ReconcileResult] = {}
        self._halted_by: str | None = None

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    async def run(self) -> RunSummary:
        """Reconcile every resource once and return the summary."""
        logger.info(
            "Starting reconciliation run",
            extra={
                "project": self._config.project_id,
                "region": self._config.region,
                "service": self._deployment.service.name,
                "dry_run": self._config.dry_run,
                "rotate_credentials": self._config.rotate_credentials,
            },
        )

        planned = self._planned_specs()
        rejected = self._invalid_names(planned)
        if rejected:
            self._reject_run(planned, rejected)
        else:
            await self._run_steps()

        self._summary.end_time = datetime.now(UTC)
        self._log_summary()
        return self._summary

    async def _run_steps(self) -> None:
        catalog = self._catalog
        for spec in catalog.provisioned_in_order():
            await self._step(spec, lambda s=spec: self._provisioner.reconcile(s))

        for record in self._secret_records():
            await self._step(record.to_spec(), lambda r=record: self._secrets.sync_record(r))

        for binding in catalog.bindings:
            await self._step(binding, lambda b=binding: self._reconcile_binding(b))

        service_result = await self._deploy()

        if self._deployment.service.allow_unauthenticated:
            binding = invoker_binding(self._deployment.service.name, service_result.key)
            await self._step(binding, lambda: self._reconcile_binding(binding))

    def _planned_specs(self) -> list[ResourceSpec]:
        """Every resource the run may touch, in execution order."""
        catalog = self._catalog
        svc = self._deployment.service
        service = ResourceSpec(kind=ResourceKind.COMPUTE_SERVICE, name=svc.name)
        planned = [
            *catalog.provisioned_in_order(),
            *(record.to_spec() for record in self._secret_records()),
            *catalog.bindings,
            service,
        ]
        if svc.allow_unauthenticated:
            planned.append(invoker_binding(svc.name, service.key))
        return planned

    @staticmethod
    def _invalid_names(planned: list[ResourceSpec]) -> dict[str, str]:
        """Validation errors per resource key, checked before any cloud call."""
        rejected: dict[str, str] = {}
        for spec in planned:
            try:
                validate_name(spec.kind, spec.name)
                if spec.parent_kind is not None:
                    validate_name(spec.parent_kind, spec.parent)
            except InvalidResourceName as e:
                rejected[spec.key] = str(e)
        return rejected

    def _reject_run(self, planned: list[ResourceSpec], rejected: dict[str, str]) -> None:
        logger.error(
            "Invalid resource names, nothing applied",
            extra={"rejected": rejected},
        )
        reason = f"not attempted: invalid resource name in {', '.join(rejected)}"
        for spec in planned:
            error = rejected.get(spec.key)
            if error is None:
                self._summary.results.append(self._not_attempted(spec, reason))
            else:
                self._summary.results.append(
                    ReconcileResult(
                        kind=spec.kind.value,
                        name=spec.name,
                        key=spec.key,
                        action=Action.FAILED,
                        error=error,
                        dry_run=self._config.dry_run,
                    )
                )

    def _secret_records(self) -> list[SecretRecord]:
        catalog = self._catalog
        accessors = frozenset({catalog.identity.member})
        names = self._deployment.secrets
        return [
            SecretRecord(
                name=names.password,
                current_value=self._config.db_password,
                accessors=accessors,
                requires=(catalog.user.key, catalog.identity_spec.key),
            ),
            SecretRecord(
                name=names.encryption_key,
                current_value=self._config.encryption_key,
                accessors=accessors,
                requires=(catalog.identity_spec.key,),
            ),
        ]

    async def _reconcile_binding(self, spec: ResourceSpec) -> ReconcileResult:
        result = await self._provisioner.reconcile(spec)
        if not self._config.dry_run:
            log_security_audit_event(
                "grant",
                target_resource=spec.parent or self._config.project_id,
                action=f"{spec.name} -> {spec.desired_fields.get('member', '')}",
                result=result.action.value,
            )
        return result

    async def _deploy(self) -> ReconcileResult:
        """Build the descriptor from prior outputs and apply it."""
        svc = self._deployment.service
        # The deployment depends on everything before it
        placeholder = ResourceSpec(
            kind=ResourceKind.COMPUTE_SERVICE,
            name=svc.name,
            requires=tuple(self._results),
        )

        async def apply() -> ReconcileResult:
            catalog = self._catalog
            instance = self._results.get(catalog.instance.key)
            try:
                descriptor = build_descriptor(
                    self._deployment,
                    project_id=self._config.project_id,
                    region=self._config.region,
                    service_account=catalog.identity.email,
                    instance_outputs=instance.outputs if instance else {},
                    password_secret=self._deployment.secrets.password,
                    encryption_key_secret=self._deployment.secrets.encryption_key,
                )
            except DescriptorError as e:
                return ReconcileResult(
                    kind=placeholder.kind.value,
                    name=placeholder.name,
                    key=placeholder.key,
                    action=Action.FAILED,
                    error=str(e),
                    dry_run=self._config.dry_run,
                )
            return await self._updater.apply(descriptor, requires=placeholder.requires)

        return await self._step(placeholder, apply)

    async def _step(
        self,
        spec: ResourceSpec,
        run: Callable[[], Awaitable[ReconcileResult]],
    ) -> ReconcileResult:
        """Run one step unless the run halted or a prerequisite failed."""
        if self._halted_by is not None:
            result = self._not_attempted(
                spec, f"not attempted: run halted after fatal failure of {self._halted_by}"
            )
        else:
            failed = [
                key
                for key in spec.requires
                if key in self._results and not self._results[key].success
            ]
            if failed:
                result = self._not_attempted(spec, f"prerequisite failed: {', '.join(failed)}")
            else:
                result = await run()

        self._results[result.key or spec.key] = result
        self._summary.results.append(result)

        if result.fatal and self._halted_by is None:
            self._halted_by = result.key or spec.key
            logger.error(
                "Fatal failure, halting run",
                extra={"resource": self._halted_by, "error": result.error},
            )
        return result

    def _not_attempted(self, spec: ResourceSpec, reason: str) -> ReconcileResult:
        logger.warning(
            "Skipping resource",
            extra={"resource": spec.key, "reason": reason},
        )
        return ReconcileResult(
            kind=spec.kind.value,
            name=spec.name,
            key=spec.key,
            action=Action.FAILED,
            error=reason,
            dry_run=self._config.dry_run,
        )

    def _log_summary(self) -> None:
        summary = self._summary
        extra: dict[str, Any] = {
            "duration_seconds": summary.duration_seconds,
            "dry_run": summary.dry_run,
            "counts": summary.counts(),
        }
        failed = [r.key for r in summary.results if not r.success]
        if failed:
            extra["failed"] = failed
            logger.error("Reconciliation finished with failures", extra=extra)
        else:
            logger.info("Reconciliation finished", extra=extra)
