"""Idempotent provisioning of a containerized application on Google Cloud."""

__version__ = "0.1.0"
