"""Versioned secret synchronization.

Secret Manager is an append-only version log, not a key-value store. Every
run therefore:
1. Ensures the secret container exists ("already exists" is success)
2. Appends a new version with the current value, even if it is unchanged
3. Grants read access to every accessor identity (duplicate grants are no-ops)

A failed version append is fatal for the run: the deployment references
``latest`` and must not start against a stale value. A failed grant for one
accessor is reported but does not stop the grants for the others.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .catalog import SECRET_ACCESSOR_ROLE, ResourceKind, ResourceSpec
from .cloud import CloudError
from .provisioner import Action, ReconcileResult, ResourceProvisioner
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

DEFAULT_REPLICATION = "automatic"


@dataclass(frozen=True)
class SecretRecord:
    """A secret to synchronize: its name, value and who may read it."""

    name: str
    current_value: str = field(repr=False)
    accessors: frozenset[str] = frozenset()
    requires: tuple[str, ...] = ()

    def to_spec(self) -> ResourceSpec:
        return ResourceSpec(
            kind=ResourceKind.SECRET,
            name=self.name,
            desired_fields={"replication": DEFAULT_REPLICATION},
            requires=self.requires,
        )


class SecretSynchronizer:
    """Creates secret containers, appends versions and grants read access."""

    def __init__(self, provisioner: ResourceProvisioner) -> None:
        self._provisioner = provisioner

    async def sync(
        self,
        name: str,
        value: str,
        accessors: Iterable[str],
        requires: tuple[str, ...] = (),
    ) -> ReconcileResult:
        """Synchronize one secret.

        Args:
            name: Secret name.
            value: Current secret value. Never logged.
            accessors: IAM members granted read access.
            requires: Keys of resources this secret depends on.

        Returns:
            ReconcileResult with ``version`` set to the appended version id.
            ``fatal`` is set when the container or the version could not be
            written.
        """
        record = SecretRecord(
            name=name,
            current_value=value,
            accessors=frozenset(accessors),
            requires=requires,
        )
        return await self.sync_record(record)

    async def sync_record(self, record: SecretRecord) -> ReconcileResult:
        spec = record.to_spec()
        secrets = (record.current_value,)

        result = await self._provisioner.reconcile(spec)
        if not result.success:
            # No container means no version: the deployment cannot resolve it
            result.fatal = True
            result.error = self._provisioner.redact(result.error or "", secrets)
            return result

        if self._provisioner.dry_run:
            return result

        policy = self._provisioner.retry_policy()
        client = self._provisioner.client

        try:
            version = await policy.call(
                "add_secret_version",
                lambda: client.add_secret_version(record.name, record.current_value),
                spec.key,
            )
        except CloudError as e:
            result.action = Action.FAILED
            result.fatal = True
            result.error = self._provisioner.redact(
                f"adding secret version failed: {e}", secrets
            )
            result.attempts += policy.attempts_made
            logger.error(
                "Secret version append failed",
                extra={"secret": record.name, "error": result.error},
            )
            return result

        result.version = version
        log_security_audit_event(
            "secret_version",
            target_resource=record.name,
            action="add_version",
            result="success",
        )

        failed_accessors: list[str] = []
        for accessor in sorted(record.accessors):
            try:
                outcome = await policy.call(
                    "grant_access",
                    lambda member=accessor: client.grant_access(
                        ResourceKind.SECRET, record.name, member, SECRET_ACCESSOR_ROLE
                    ),
                    spec.key,
                )
            except CloudError as e:
                failed_accessors.append(accessor)
                logger.error(
                    "Secret access grant failed",
                    extra={
                        "secret": record.name,
                        "accessor": accessor,
                        "error": self._provisioner.redact(str(e), secrets),
                    },
                )
                log_security_audit_event(
                    "grant",
                    target_resource=record.name,
                    action=SECRET_ACCESSOR_ROLE,
                    result="failure",
                )
                continue

            log_security_audit_event(
                "grant",
                target_resource=record.name,
                action=SECRET_ACCESSOR_ROLE,
                result=outcome.value,
            )

        result.attempts += policy.attempts_made
        if failed_accessors:
            result.action = Action.FAILED
            result.error = f"access grant failed for: {', '.join(failed_accessors)}"

        logger.info(
            "Secret synchronized",
            extra={
                "secret": record.name,
                "action": result.action.value,
                "version": version,
                "accessors": len(record.accessors),
            },
        )
        return result
