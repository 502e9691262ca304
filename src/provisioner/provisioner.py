"""Idempotent create-or-update of a single managed resource.

For each ResourceSpec the provisioner:
1. Validates the name against the platform's naming rules (no network call)
2. Describes the resource
3. Absent  -> create; "already exists" from a concurrent creator is success
   Present -> compare managed fields; update on drift, otherwise no-op
4. Re-describes after a mutation to confirm and capture outputs

Transient control-plane errors are retried with bounded exponential backoff.
Definitive rejections are reported as Failed immediately.

SECURITY: Write-only fields (passwords) are never logged and are redacted
from any error text placed in a ReconcileResult.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .catalog import ResourceSpec, ResourceState, validate_name
from .cloud import (
    CallOutcome,
    CloudClient,
    CloudError,
    DefinitiveRejection,
    TransientInfrastructureError,
)
from .config import (
    DEFAULT_RETRY_BACKOFF_SECONDS,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    RETRY_JITTER_FRACTION,
)
from .diff_normalizer import DiffNormalizer, diff_managed_fields
from .security import redact

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


class Action(str, Enum):
    """What a reconciliation did (or would do, in dry-run mode)."""

    CREATED = "Created"
    UPDATED = "Updated"
    UNCHANGED = "Unchanged"
    FAILED = "Failed"


@dataclass
class ReconcileResult:
    """Outcome of reconciling one resource in one run."""

    kind: str
    name: str
    action: Action
    key: str = ""
    error: str | None = None
    # Non-secret observed fields after the step (connection name, address...)
    outputs: dict[str, str] = field(default_factory=dict)
    # Secret version appended by this run, if any
    version: str | None = None
    attempts: int = 0
    dry_run: bool = False
    # A fatal failure stops the rest of the run
    fatal: bool = False

    @property
    def success(self) -> bool:
        return self.action is not Action.FAILED


class RetryExhaustedError(CloudError):
    """Raised when a transient error persists past the attempt ceiling."""

    pass


class RetryPolicy:
    """Bounded exponential backoff with jitter for transient errors."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        sleep: SleepFn | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep or asyncio.sleep
        self.attempts_made = 0

    async def call(self, operation: str, fn: Callable[[], T], resource: str = "") -> T:
        """Run blocking ``fn`` off the event loop, retrying transient errors.

        Raises:
            DefinitiveRejection: Immediately, without retrying.
            RetryExhaustedError: After ``max_attempts`` transient failures.
        """
        loop = asyncio.get_running_loop()
        last_error: TransientInfrastructureError | None = None

        for attempt in range(1, self.max_attempts + 1):
            self.attempts_made += 1
            try:
                return await loop.run_in_executor(None, fn)
            except TransientInfrastructureError as e:
                last_error = e
                if attempt < self.max_attempts:
                    # Exponential backoff with jitter
                    backoff = self.backoff_seconds * (2 ** (attempt - 1))
                    jitter = random.uniform(0, backoff * RETRY_JITTER_FRACTION)
                    wait_time = backoff + jitter

                    logger.warning(
                        f"{operation} failed transiently, retrying",
                        extra={
                            "resource": resource,
                            "attempt": attempt,
                            "max_attempts": self.max_attempts,
                            "wait_seconds": round(wait_time, 2),
                            "error": str(e),
                        },
                    )
                    await self._sleep(wait_time)

        # SAFETY: the loop runs at least once, so last_error is set here
        assert last_error is not None, "Retry loop completed without setting last_error"
        raise RetryExhaustedError(
            f"{operation} still failing after {self.max_attempts} attempts: {last_error}"
        ) from last_error


class ResourceProvisioner:
    """Decides create vs update vs no-op for one ResourceSpec and applies it."""

    def __init__(
        self,
        client: CloudClient,
        *,
        max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        dry_run: bool = False,
        rotate_credentials: bool = False,
        secret_values: tuple[str, ...] = (),
        sleep: SleepFn | None = None,
        normalizer: DiffNormalizer | None = None,
    ) -> None:
        """Initialize the provisioner.

        Args:
            client: Cloud control-plane capability.
            max_attempts: Attempts per cloud call on transient errors.
            backoff_seconds: Base backoff, doubled after every attempt.
            dry_run: Describe only and report the planned action.
            rotate_credentials: Re-apply write-only fields on existing resources.
            secret_values: Extra secret material to redact from error text.
            sleep: Awaitable sleep, injectable for tests.
            normalizer: Value normalizer used for drift comparison.
        """
        self._client = client
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._dry_run = dry_run
        self._rotate_credentials = rotate_credentials
        self._secret_values = secret_values
        self._sleep = sleep
        self._normalizer = normalizer or DiffNormalizer()

    @property
    def client(self) -> CloudClient:
        return self._client

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def retry_policy(self) -> RetryPolicy:
        """Fresh retry policy; attempt counters are per resource."""
        return RetryPolicy(self._max_attempts, self._backoff_seconds, self._sleep)

    def redact(self, text: str, extra: tuple[str, ...] = ()) -> str:
        return redact(text, self._secret_values + extra)

    async def reconcile(self, spec: ResourceSpec) -> ReconcileResult:
        """Bring one resource to its desired state.

        Never raises for control-plane errors: failures are reported in the
        returned ReconcileResult so the run can report every resource.
        """
        result = ReconcileResult(
            kind=spec.kind.value,
            name=spec.name,
            key=spec.key,
            action=Action.UNCHANGED,
            dry_run=self._dry_run,
        )
        policy = self.retry_policy()

        try:
            # Fail fast: no partial side effects for an invalid name
            validate_name(spec.kind, spec.name)
            state = await policy.call("describe", lambda: self._client.describe(spec), spec.key)

            if not state.present:
                await self._create(spec, result, policy)
            else:
                await self._reconcile_present(spec, state, result, policy)

        except (DefinitiveRejection, RetryExhaustedError) as e:
            result.action = Action.FAILED
            result.error = self.redact(str(e), spec.secret_values)
        except CloudError as e:
            result.action = Action.FAILED
            result.error = self.redact(f"{type(e).__name__}: {e}", spec.secret_values)

        result.attempts = policy.attempts_made
        self._log_result(spec, result)
        return result

    async def _create(
        self, spec: ResourceSpec, result: ReconcileResult, policy: RetryPolicy
    ) -> None:
        if self._dry_run:
            result.action = Action.CREATED
            return

        outcome = await policy.call("create", lambda: self._client.create(spec), spec.key)
        confirmed = await policy.call(
            "describe", lambda: self._client.describe(spec), spec.key
        )

        if outcome is CallOutcome.OK:
            result.action = Action.CREATED
            result.outputs = self._outputs(spec, confirmed.observed_fields)
            return

        # Someone else created it between our describe and create
        logger.info(
            "Resource created concurrently, treating as existing",
            extra={"resource": spec.key, "outcome": outcome.value},
        )
        if not confirmed.present:
            raise DefinitiveRejection(
                f"{spec.key} reported as already existing but cannot be described"
            )
        await self._reconcile_present(spec, confirmed, result, policy)

    async def _reconcile_present(
        self,
        spec: ResourceSpec,
        state: ResourceState,
        result: ReconcileResult,
        policy: RetryPolicy,
    ) -> None:
        diffs = diff_managed_fields(spec, state.observed_fields, self._normalizer)
        rotate = self._rotate_credentials and bool(spec.secret_values)

        if not diffs and not rotate:
            result.action = Action.UNCHANGED
            result.outputs = self._outputs(spec, state.observed_fields)
            return

        logger.info(
            "Drift detected",
            extra={
                "resource": spec.key,
                # Field names only; values may be large and write-only fields
                # are never part of a diff
                "drifted_fields": [d.field for d in diffs],
                "rotate_credentials": rotate,
                "dry_run": self._dry_run,
            },
        )

        if self._dry_run:
            result.action = Action.UPDATED
            result.outputs = self._outputs(spec, state.observed_fields)
            return

        outcome = await policy.call("update", lambda: self._client.update(spec), spec.key)
        if outcome not in (CallOutcome.OK, CallOutcome.ALREADY_GRANTED):
            raise DefinitiveRejection(f"update of {spec.key} was not applied: {outcome.value}")
        confirmed = await policy.call(
            "describe", lambda: self._client.describe(spec), spec.key
        )
        result.action = Action.UPDATED
        result.outputs = self._outputs(spec, confirmed.observed_fields)

    def _outputs(self, spec: ResourceSpec, observed: Mapping[str, str]) -> dict[str, str]:
        hidden = set(spec.rule.write_only_fields)
        return {k: v for k, v in observed.items() if k not in hidden}

    def _log_result(self, spec: ResourceSpec, result: ReconcileResult) -> None:
        extra: dict[str, Any] = {
            "kind": result.kind,
            "resource_name": result.name,
            "action": result.action.value,
            "attempts": result.attempts,
            "dry_run": result.dry_run,
        }
        if result.error is not None:
            extra["error"] = result.error
            logger.error("Reconcile failed", extra=extra)
        else:
            logger.info("Reconcile result", extra=extra)
