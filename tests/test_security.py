"""Tests for credential resolution and secret redaction."""

from __future__ import annotations

import logging
import os
from unittest import mock

import pytest
from google.auth.exceptions import DefaultCredentialsError

from provisioner.security import (
    CLOUD_PLATFORM_SCOPE,
    KEY_FILE_ENV_VAR,
    REDACTED,
    CredentialError,
    get_default_credentials,
    log_security_audit_event,
    redact,
)


class TestRedact:
    """Tests for secret redaction."""

    def test_replaces_every_occurrence(self) -> None:
        text = redact("user n8n pw=hunter2; retry pw=hunter2", ["hunter2"])

        assert text == f"user n8n pw={REDACTED}; retry pw={REDACTED}"

    def test_longest_secret_first(self) -> None:
        """Test that a secret containing another is fully hidden."""
        text = redact("key=abc123xyz", ["abc", "abc123xyz"])

        assert text == f"key={REDACTED}"
        assert "xyz" not in text

    def test_empty_values_ignored(self) -> None:
        assert redact("nothing here", ["", "absent"]) == "nothing here"


class TestDefaultCredentials:
    """Tests for Application Default Credentials resolution."""

    def test_credentials_returned(self) -> None:
        credentials = mock.Mock()

        with mock.patch.dict(os.environ, {}, clear=True), mock.patch(
            "google.auth.default", return_value=(credentials, "test-project-01")
        ) as default:
            assert get_default_credentials("test-project-01") is credentials

        default.assert_called_once_with(scopes=[CLOUD_PLATFORM_SCOPE])

    def test_missing_credentials_raise(self) -> None:
        with mock.patch(
            "google.auth.default", side_effect=DefaultCredentialsError("not found")
        ):
            with pytest.raises(CredentialError) as exc_info:
                get_default_credentials("test-project-01")

        assert "not found" in str(exc_info.value)

    def test_key_file_warned(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that key file credentials are reported."""
        with mock.patch.dict(os.environ, {KEY_FILE_ENV_VAR: "/tmp/key.json"}), mock.patch(
            "google.auth.default", return_value=(mock.Mock(), "test-project-01")
        ):
            with caplog.at_level(logging.WARNING, logger="provisioner.security"):
                get_default_credentials("test-project-01")

        assert "key file" in caplog.text

    def test_other_project_is_not_rejected(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True), mock.patch(
            "google.auth.default", return_value=(mock.Mock(), "other-project")
        ):
            get_default_credentials("test-project-01")


class TestAuditEvent:
    """Tests for security audit logging."""

    def test_audit_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="provisioner.security"):
            log_security_audit_event(
                "grant",
                target_resource="secret:n8n-db-password",
                action="roles/secretmanager.secretAccessor",
                result="Created",
            )

        record = caplog.records[-1]
        assert record.security_audit is True
        assert record.event_type == "grant"
        assert record.result == "Created"
