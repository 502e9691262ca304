"""Startup readiness gate.

Runs inside the freshly started container, before the application. It polls
the database with a bounded number of attempts and then either replaces
itself with the application process (exec) or exits non-zero so the
platform recycles the instance.

State machine::

    WAITING --probe ok--> READY   (exec the application)
    WAITING --attempts exhausted--> FAILED   (exit 1)

There is no sleep after the final failed attempt, so an always-failing probe
with ``max_attempts=N`` sleeps exactly N-1 times.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, MutableMapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import asyncpg

from .config import ConfigurationError

logger = logging.getLogger(__name__)

POSTGRES_DB_TYPE = "postgresdb"

DEFAULT_DB_PORT = 5432
DEFAULT_WAIT_MAX_ATTEMPTS = 30
DEFAULT_WAIT_INTERVAL_SECONDS = 2.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0
DEFAULT_APP_PORT = "5678"

Probe = Callable[[], Awaitable[bool]]
SleepFn = Callable[[float], Awaitable[Any]]
ExecFn = Callable[[str, Sequence[str], MutableMapping[str, str]], Any]


class GateState(str, Enum):
    """States of the readiness gate."""

    WAITING = "Waiting"
    READY = "Ready"
    FAILED = "Failed"


class DependencyUnavailable(Exception):
    """Raised when the dependency never became reachable within the bound."""

    pass


@dataclass(frozen=True)
class GateConfig:
    """Database connection and polling settings read inside the container."""

    db_type: str
    host: str = ""
    port: int = DEFAULT_DB_PORT
    database: str = ""
    user: str = ""
    password: str = field(default="", repr=False)
    max_attempts: int = DEFAULT_WAIT_MAX_ATTEMPTS
    interval_seconds: float = DEFAULT_WAIT_INTERVAL_SECONDS
    connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if self.max_attempts < 1:
            errors.append("DB_WAIT_MAX_ATTEMPTS must be at least 1")
        if self.interval_seconds < 0:
            errors.append("DB_WAIT_INTERVAL must not be negative")
        if self.connect_timeout_seconds <= 0:
            errors.append("DB_CONNECT_TIMEOUT must be positive")

        if self.requires_check:
            if not self.host:
                errors.append("DB_HOST is required when DB_TYPE is postgresdb")
            if not self.database:
                errors.append("DB_NAME is required when DB_TYPE is postgresdb")
            if not self.user:
                errors.append("DB_USER is required when DB_TYPE is postgresdb")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def requires_check(self) -> bool:
        """Only a Postgres backend is waited for."""
        return self.db_type == POSTGRES_DB_TYPE

    @classmethod
    def from_env(
        cls, environ: MutableMapping[str, str] | None = None, **overrides: object
    ) -> GateConfig:
        """Load gate settings from the container environment.

        Environment Variables:
            DB_TYPE: Database backend; only "postgresdb" is waited for
            DB_HOST / DB_POSTGRESDB_HOST: Host name or socket directory
            DB_PORT / DB_POSTGRESDB_PORT: Port (default: 5432)
            DB_NAME / DB_POSTGRESDB_DATABASE: Database name
            DB_USER / DB_POSTGRESDB_USER: Database user
            DB_PASSWORD / DB_POSTGRESDB_PASSWORD: Database password
            DB_WAIT_MAX_ATTEMPTS: Probe attempts before giving up (default: 30)
            DB_WAIT_INTERVAL: Seconds between attempts (default: 2)
            DB_CONNECT_TIMEOUT: Per-attempt connect timeout (default: 5)
        """
        env = os.environ if environ is None else environ

        def get(key: str, fallback: str, default: str = "") -> str:
            return env.get(key) or env.get(fallback) or default

        def get_number(key: str, default: float, convert: Callable[[str], Any]) -> Any:
            value = env.get(key)
            if not value:
                return default
            try:
                return convert(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        port_value = get("DB_PORT", "DB_POSTGRESDB_PORT", str(DEFAULT_DB_PORT))
        try:
            port = int(port_value)
        except ValueError as e:
            raise ConfigurationError(f"DB_PORT must be an integer: {port_value}") from e

        values: dict[str, object] = {
            "db_type": env.get("DB_TYPE", ""),
            "host": get("DB_HOST", "DB_POSTGRESDB_HOST"),
            "port": port,
            "database": get("DB_NAME", "DB_POSTGRESDB_DATABASE"),
            "user": get("DB_USER", "DB_POSTGRESDB_USER"),
            "password": get("DB_PASSWORD", "DB_POSTGRESDB_PASSWORD"),
            "max_attempts": get_number(
                "DB_WAIT_MAX_ATTEMPTS", DEFAULT_WAIT_MAX_ATTEMPTS, int
            ),
            "interval_seconds": get_number(
                "DB_WAIT_INTERVAL", DEFAULT_WAIT_INTERVAL_SECONDS, float
            ),
            "connect_timeout_seconds": get_number(
                "DB_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT_SECONDS, float
            ),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)  # type: ignore[arg-type]


def postgres_probe(config: GateConfig) -> Probe:
    """Build a probe that opens a connection and runs ``SELECT 1``."""

    async def probe() -> bool:
        try:
            conn = await asyncpg.connect(
                host=config.host,
                port=config.port,
                database=config.database,
                user=config.user,
                password=config.password,
                timeout=config.connect_timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.debug("Database connect failed", extra={"error_type": type(e).__name__})
            return False

        try:
            return await conn.fetchval("SELECT 1") == 1
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.debug("Database query failed", extra={"error_type": type(e).__name__})
            return False
        finally:
            await conn.close()

    return probe


class ReadinessGate:
    """Bounded poll of a dependency probe."""

    def __init__(
        self,
        probe: Probe,
        max_attempts: int = DEFAULT_WAIT_MAX_ATTEMPTS,
        interval: float = DEFAULT_WAIT_INTERVAL_SECONDS,
        sleep: SleepFn | None = None,
    ) -> None:
        self._probe = probe
        self._max_attempts = max_attempts
        self._interval = interval
        self._sleep = sleep or asyncio.sleep
        self.state = GateState.WAITING
        self.attempts = 0

    async def await_dependency(self) -> GateState:
        """Poll until the probe succeeds or the attempts are exhausted.

        Returns:
            GateState.READY or GateState.FAILED.
        """
        while self.state is GateState.WAITING:
            self.attempts += 1
            if await self._probe():
                self.state = GateState.READY
                logger.info(
                    "Database connection successful",
                    extra={"attempt": self.attempts},
                )
                break

            if self.attempts >= self._max_attempts:
                self.state = GateState.FAILED
                logger.error(
                    "Dependency unavailable, giving up",
                    extra={"attempts": self.attempts, "max_attempts": self._max_attempts},
                )
                break

            logger.info(
                "Waiting for database to be ready",
                extra={
                    "attempt": self.attempts,
                    "max_attempts": self._max_attempts,
                    "wait_seconds": self._interval,
                },
            )
            await self._sleep(self._interval)

        return self.state


async def await_dependency(
    probe: Probe,
    max_attempts: int,
    interval: float,
    sleep: SleepFn | None = None,
) -> GateState:
    """Functional form of ReadinessGate.await_dependency."""
    return await ReadinessGate(probe, max_attempts, interval, sleep).await_dependency()


def prepare_environment(
    environ: MutableMapping[str, str], port_env_names: Sequence[str]
) -> None:
    """Copy the platform-assigned port into the names the application reads."""
    port = environ.get("PORT")
    if not port:
        port = DEFAULT_APP_PORT
        environ["PORT"] = port
    for name in port_env_names:
        environ[name] = port


async def run_gate(
    config: GateConfig,
    command: Sequence[str],
    *,
    port_env_names: Sequence[str] = (),
    probe: Probe | None = None,
    sleep: SleepFn | None = None,
    environ: MutableMapping[str, str] | None = None,
    execvpe: ExecFn = os.execvpe,
) -> int:
    """Wait for the database, then replace this process with ``command``.

    Returns:
        Exit code. Only returns on failure in production, since a successful
        exec never comes back.

    Raises:
        DependencyUnavailable: If the probe never succeeded.
    """
    if not command:
        raise ConfigurationError("No application command given to start")

    env = os.environ if environ is None else environ
    prepare_environment(env, port_env_names)

    logger.info(
        "Startup configuration",
        extra={
            "port": env.get("PORT"),
            "port_env": list(port_env_names),
            "db_type": config.db_type,
            "db_host": config.host,
            "db_port": config.port,
        },
    )

    if config.requires_check:
        gate = ReadinessGate(
            probe or postgres_probe(config),
            max_attempts=config.max_attempts,
            interval=config.interval_seconds,
            sleep=sleep,
        )
        if await gate.await_dependency() is GateState.FAILED:
            raise DependencyUnavailable(
                f"Failed to connect to database after {gate.attempts} attempts"
            )
    else:
        logger.info("Not using Postgres database, skipping connection check")

    logger.info("Starting application", extra={"command": command[0]})
    execvpe(command[0], list(command), env)
    return 0
