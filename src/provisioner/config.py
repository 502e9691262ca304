"""Configuration management with validation.

Every setting the provisioner needs is resolved and validated here, before
any cloud call is made. Components receive the resulting ``Config`` at
construction and never read the environment themselves.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when a required setting is absent or invalid."""

    pass


# Retry policy for transient control-plane errors
DEFAULT_RETRY_MAX_ATTEMPTS = 5
MIN_RETRY_MAX_ATTEMPTS = 1
MAX_RETRY_MAX_ATTEMPTS = 10
DEFAULT_RETRY_BACKOFF_SECONDS = 1.0
RETRY_JITTER_FRACTION = 0.2

# Long-running operation timeouts (Cloud SQL instance creation is the slow one)
DEFAULT_OPERATION_TIMEOUT_SECONDS = 900
MIN_OPERATION_TIMEOUT_SECONDS = 30
MAX_OPERATION_TIMEOUT_SECONDS = 3600
OPERATION_POLL_INTERVAL_SECONDS = 5

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max settings file

DEFAULT_SPEC_PATH = "deployment.yaml"

# Input validation patterns
VALID_PROJECT_ID_PATTERN = r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$"
VALID_REGION_PATTERN = r"^[a-z]+-[a-z]+[0-9]+$"


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid or missing
    settings raise ConfigurationError immediately, listing every problem.
    """

    # Required fields
    project_id: str
    region: str

    spec_path: Path = field(default_factory=lambda: Path(DEFAULT_SPEC_PATH))

    # Secret material. Never shown in repr or logs.
    db_password: str = field(default="", repr=False)
    encryption_key: str = field(default="", repr=False)

    # Behavior
    dry_run: bool = False
    rotate_credentials: bool = False

    # Retry and timing
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.project_id:
            errors.append("GCP_PROJECT is required")
        elif not re.match(VALID_PROJECT_ID_PATTERN, self.project_id):
            errors.append(
                f"GCP_PROJECT must match pattern {VALID_PROJECT_ID_PATTERN}: {self.project_id}"
            )

        if not self.region:
            errors.append("GCP_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"GCP_REGION must be a valid region name: {self.region}")

        if not self.spec_path.exists():
            errors.append(f"Deployment spec file does not exist: {self.spec_path}")

        # Secret values are only needed when changes are actually applied
        if not self.dry_run:
            if not self.db_password:
                errors.append("DB_PASSWORD is required")
            if not self.encryption_key:
                errors.append("ENCRYPTION_KEY is required")

        if not (MIN_RETRY_MAX_ATTEMPTS <= self.retry_max_attempts <= MAX_RETRY_MAX_ATTEMPTS):
            errors.append(
                f"RETRY_MAX_ATTEMPTS must be between {MIN_RETRY_MAX_ATTEMPTS} "
                f"and {MAX_RETRY_MAX_ATTEMPTS}"
            )

        if self.retry_backoff_seconds < 0:
            errors.append("RETRY_BACKOFF_SECONDS must not be negative")

        if not (
            MIN_OPERATION_TIMEOUT_SECONDS
            <= self.operation_timeout_seconds
            <= MAX_OPERATION_TIMEOUT_SECONDS
        ):
            errors.append(
                f"OPERATION_TIMEOUT must be between {MIN_OPERATION_TIMEOUT_SECONDS} "
                f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def secret_values(self) -> tuple[str, ...]:
        """Secret material known to this run, for redaction."""
        return tuple(v for v in (self.db_password, self.encryption_key) if v)

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            GCP_PROJECT: Target project ID
            GCP_REGION: Region for the database instance, repository and service
            DEPLOYMENT_SPEC: Path to the deployment settings YAML (default: deployment.yaml)
            DB_PASSWORD: Database user password (required unless dry-run)
            ENCRYPTION_KEY: Application encryption key (required unless dry-run)
            DRY_RUN: If "true", only report planned actions (default: false)
            ROTATE_CREDENTIALS: If "true", re-apply the database password (default: false)
            RETRY_MAX_ATTEMPTS: Attempts per cloud call on transient errors (default: 5)
            RETRY_BACKOFF_SECONDS: Base backoff between attempts (default: 1.0)
            OPERATION_TIMEOUT: Long-running operation timeout in seconds (default: 900)

        Keyword overrides (e.g. from CLI options) take precedence over the
        environment.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        values: dict[str, object] = {
            "project_id": os.environ.get("GCP_PROJECT", ""),
            "region": os.environ.get("GCP_REGION", ""),
            "spec_path": Path(os.environ.get("DEPLOYMENT_SPEC", DEFAULT_SPEC_PATH)),
            "db_password": os.environ.get("DB_PASSWORD", ""),
            "encryption_key": os.environ.get("ENCRYPTION_KEY", ""),
            "dry_run": get_bool("DRY_RUN", False),
            "rotate_credentials": get_bool("ROTATE_CREDENTIALS", False),
            "retry_max_attempts": get_int("RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS),
            "retry_backoff_seconds": get_float(
                "RETRY_BACKOFF_SECONDS", DEFAULT_RETRY_BACKOFF_SECONDS
            ),
            "operation_timeout_seconds": get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)  # type: ignore[arg-type]
