"""Pydantic models for the deployment settings file.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Typed sections consumed by the resource catalog
"""

from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator

MEMORY_PATTERN = r"^[0-9]+(Mi|Gi)$"
CPU_PATTERN = r"^([0-9]+(\.[0-9]+)?|[0-9]+m)$"


class RepositoryConfig(BaseModel):
    """Artifact Registry repository holding the application image."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=63)]
    format: str = "DOCKER"
    description: str = "Managed by cloud-provisioner"

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        valid = {"DOCKER"}
        if v.upper() not in valid:
            raise ValueError(f"format must be one of {valid}")
        return v.upper()


class DatabaseInstanceConfig(BaseModel):
    """Cloud SQL instance configuration."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=98)]
    database_version: str = Field("POSTGRES_15", alias="databaseVersion")
    tier: str = "db-f1-micro"
    availability_type: str = Field("ZONAL", alias="availabilityType")
    disk_size_gb: Annotated[int, Field(ge=10, le=65536, alias="diskSizeGb")] = 10

    @field_validator("database_version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not v.startswith("POSTGRES_"):
            raise ValueError("databaseVersion must be a POSTGRES_* version")
        return v

    @field_validator("availability_type")
    @classmethod
    def validate_availability(cls, v: str) -> str:
        valid = {"ZONAL", "REGIONAL"}
        if v.upper() not in valid:
            raise ValueError(f"availabilityType must be one of {valid}")
        return v.upper()


class DatabaseConfig(BaseModel):
    """Database, user and connectivity settings."""

    model_config = {"extra": "ignore"}

    instance: DatabaseInstanceConfig
    name: Annotated[str, Field(min_length=1, max_length=63)]
    user: Annotated[str, Field(min_length=1, max_length=63)]
    type: str = "postgresdb"
    port: Annotated[int, Field(ge=1, le=65535)] = 5432

    # socket: connect through the Cloud SQL volume attached to the service
    # address: connect to an explicit host or the instance IP address
    connection: Literal["socket", "address"] = "socket"
    host: str | None = None


class SecretsConfig(BaseModel):
    """Names of the Secret Manager secrets holding credentials."""

    model_config = {"extra": "ignore"}

    password: Annotated[str, Field(min_length=1, max_length=255)]
    encryption_key: Annotated[str, Field(min_length=1, max_length=255, alias="encryptionKey")]


class ServiceIdentityConfig(BaseModel):
    """Service account the application runs as."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=6, max_length=30)]
    display_name: str | None = Field(None, alias="displayName")
    roles: list[str] = Field(default_factory=lambda: ["roles/cloudsql.client"])


class ServiceConfig(BaseModel):
    """Cloud Run service configuration."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=49)]
    image: Annotated[str, Field(min_length=1)]
    port: Annotated[int, Field(ge=1, le=65535)] = 5678
    memory: str = "1Gi"
    cpu: str = "1"
    min_instances: Annotated[int, Field(ge=0, le=1000, alias="minInstances")] = 0
    max_instances: Annotated[int, Field(ge=1, le=1000, alias="maxInstances")] = 1
    concurrency: Annotated[int, Field(ge=1, le=1000)] = 80
    health_check_path: str = Field("/healthz", alias="healthCheckPath")
    allow_unauthenticated: bool = Field(False, alias="allowUnauthenticated")
    env: dict[str, str] = Field(default_factory=dict)
    password_env_key: str = Field("DB_PASSWORD", alias="passwordEnvKey")
    encryption_key_env_key: str = Field("ENCRYPTION_KEY", alias="encryptionKeyEnvKey")

    @field_validator("memory")
    @classmethod
    def validate_memory(cls, v: str) -> str:
        if not re.match(MEMORY_PATTERN, v):
            raise ValueError("memory must look like 512Mi or 1Gi")
        return v

    @field_validator("cpu")
    @classmethod
    def validate_cpu(cls, v: str) -> str:
        if not re.match(CPU_PATTERN, v):
            raise ValueError("cpu must look like 1, 0.5 or 1000m")
        return v

    @field_validator("health_check_path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("healthCheckPath must start with '/'")
        return v

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, v: object) -> object:
        # YAML turns true/5678 into bool/int; env values are always strings
        if isinstance(v, dict):
            return {str(k): str(val).lower() if isinstance(val, bool) else str(val)
                    for k, val in v.items()}
        return v


class DeploymentSpec(BaseModel):
    """Desired state of one application deployment."""

    model_config = {"extra": "ignore"}

    repository: RepositoryConfig
    database: DatabaseConfig
    secrets: SecretsConfig
    service_identity: ServiceIdentityConfig = Field(alias="serviceIdentity")
    service: ServiceConfig
