"""Credential handling and secret hygiene.

SECURITY INVARIANTS:
1. Secret values (database password, encryption key) never appear in logs,
   ReconcileResult error text or the run summary
2. Cloud credentials come from Application Default Credentials only
3. Long-lived service account key files are reported, not silently used
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable

import google.auth
from google.auth.credentials import Credentials
from google.auth.exceptions import DefaultCredentialsError

logger = logging.getLogger(__name__)

REDACTED = "***"

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

# Environment variable pointing at a downloaded service account key
KEY_FILE_ENV_VAR = "GOOGLE_APPLICATION_CREDENTIALS"


class CredentialError(Exception):
    """Raised when no usable cloud credentials can be resolved."""

    pass


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of each secret value in ``text``.

    Longer values are replaced first so a secret that contains another one
    is not partially revealed.
    """
    for secret in sorted({s for s in secrets if s}, key=len, reverse=True):
        text = text.replace(secret, REDACTED)
    return text


def get_default_credentials(project_id: str) -> Credentials:
    """Resolve Application Default Credentials for the target project.

    Args:
        project_id: Project the run targets. A mismatch with the project the
            credentials belong to is logged, not rejected.

    Returns:
        Credentials scoped to the cloud platform.

    Raises:
        CredentialError: If no credentials are available in this environment.
    """
    key_file = os.environ.get(KEY_FILE_ENV_VAR)
    if key_file:
        logger.warning(
            "Using a service account key file; prefer attached or federated identity",
            extra={"security_event": "key_file_credentials", "env_var": KEY_FILE_ENV_VAR},
        )

    try:
        credentials, detected_project = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
    except DefaultCredentialsError as e:
        logger.critical(
            "No cloud credentials available",
            extra={"security_event": "credentials_missing", "action": "startup_blocked"},
        )
        raise CredentialError(f"Could not resolve default credentials: {e}") from e

    if detected_project and detected_project != project_id:
        logger.info(
            "Credentials belong to a different project than the target",
            extra={"credential_project": detected_project, "target_project": project_id},
        )

    logger.info(
        "Cloud credentials resolved",
        extra={"security_event": "credentials_resolved", "credential_type": type(credentials).__name__},
    )
    return credentials


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event (grants, secret versions).

    Args:
        event_type: Type of security event (grant, secret_version, ...).
        target_resource: Resource being accessed or changed.
        action: Action being performed.
        result: Result of the action (success, failure, already_granted).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
