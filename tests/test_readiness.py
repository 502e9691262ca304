"""Tests for the startup readiness gate."""

from __future__ import annotations

import asyncio
from unittest import mock

import asyncpg
import pytest

from provisioner.config import ConfigurationError
from provisioner.readiness import (
    DependencyUnavailable,
    GateConfig,
    GateState,
    ReadinessGate,
    await_dependency,
    postgres_probe,
    prepare_environment,
    run_gate,
)


def scripted_probe(outcomes: list[bool]):
    """Probe returning the given outcomes in order; records each call."""
    calls: list[int] = []

    async def probe() -> bool:
        calls.append(len(calls) + 1)
        return outcomes[len(calls) - 1]

    probe.calls = calls  # type: ignore[attr-defined]
    return probe


def postgres_config(**overrides) -> GateConfig:
    values = {
        "db_type": "postgresdb",
        "host": "/cloudsql/p:r:n8n-db",
        "database": "n8n",
        "user": "n8n-user",
        "password": "pw",
        "max_attempts": 3,
        "interval_seconds": 2.0,
    }
    values.update(overrides)
    return GateConfig(**values)


class TestReadinessGate:
    """Tests for the bounded poll."""

    @pytest.mark.asyncio
    async def test_always_failing_probe_is_bounded(
        self, fake_sleep, sleeps: list[float]
    ) -> None:
        """Test that N attempts sleep N-1 times and end Failed."""
        probe = scripted_probe([False] * 5)

        gate = ReadinessGate(probe, max_attempts=5, interval=2.0, sleep=fake_sleep)
        state = await gate.await_dependency()

        assert state is GateState.FAILED
        assert gate.attempts == 5
        assert len(probe.calls) == 5
        assert sleeps == [2.0] * 4

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self, fake_sleep, sleeps: list[float]) -> None:
        probe = scripted_probe([False, False, True])

        state = await await_dependency(probe, max_attempts=30, interval=2.0, sleep=fake_sleep)

        assert state is GateState.READY
        assert len(probe.calls) == 3
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_immediate_success_never_sleeps(
        self, fake_sleep, sleeps: list[float]
    ) -> None:
        gate = ReadinessGate(scripted_probe([True]), max_attempts=1, interval=2.0, sleep=fake_sleep)

        assert await gate.await_dependency() is GateState.READY
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_single_attempt_failure(self, fake_sleep, sleeps: list[float]) -> None:
        gate = ReadinessGate(scripted_probe([False]), max_attempts=1, interval=2.0, sleep=fake_sleep)

        assert await gate.await_dependency() is GateState.FAILED
        assert sleeps == []


class TestGateConfig:
    """Tests for GateConfig validation and loading."""

    def test_from_env_primary_keys(self) -> None:
        config = GateConfig.from_env(
            {
                "DB_TYPE": "postgresdb",
                "DB_HOST": "10.0.0.3",
                "DB_PORT": "6543",
                "DB_NAME": "n8n",
                "DB_USER": "n8n-user",
                "DB_PASSWORD": "pw",
            }
        )

        assert config.host == "10.0.0.3"
        assert config.port == 6543
        assert config.password == "pw"
        assert config.max_attempts == 30
        assert config.interval_seconds == 2.0

    def test_from_env_application_fallback_keys(self) -> None:
        """Test that the application's own DB_POSTGRESDB_* names are honoured."""
        config = GateConfig.from_env(
            {
                "DB_TYPE": "postgresdb",
                "DB_POSTGRESDB_HOST": "db.internal",
                "DB_POSTGRESDB_DATABASE": "n8n",
                "DB_POSTGRESDB_USER": "n8n-user",
                "DB_POSTGRESDB_PASSWORD": "pw",
            }
        )

        assert config.host == "db.internal"
        assert config.database == "n8n"
        assert config.port == 5432

    def test_from_env_wait_settings(self) -> None:
        config = GateConfig.from_env(
            {"DB_TYPE": "sqlite", "DB_WAIT_MAX_ATTEMPTS": "5", "DB_WAIT_INTERVAL": "0.5"}
        )

        assert config.max_attempts == 5
        assert config.interval_seconds == 0.5

    def test_overrides_win(self) -> None:
        config = GateConfig.from_env({"DB_TYPE": "sqlite"}, max_attempts=7, interval_seconds=None)

        assert config.max_attempts == 7
        assert config.interval_seconds == 2.0

    def test_non_numeric_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="DB_WAIT_MAX_ATTEMPTS"):
            GateConfig.from_env({"DB_TYPE": "sqlite", "DB_WAIT_MAX_ATTEMPTS": "many"})

    def test_postgres_requires_connection_settings(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            GateConfig(db_type="postgresdb")

        assert "DB_HOST" in str(exc_info.value)
        assert "DB_NAME" in str(exc_info.value)
        assert "DB_USER" in str(exc_info.value)

    def test_other_backends_need_nothing(self) -> None:
        assert GateConfig(db_type="sqlite").requires_check is False

    def test_zero_attempts_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="at least 1"):
            GateConfig(db_type="sqlite", max_attempts=0)

    def test_password_not_in_repr(self) -> None:
        assert "hunter2-secret" not in repr(postgres_config(password="hunter2-secret"))


class TestPrepareEnvironment:
    """Tests for port propagation."""

    def test_port_copied_to_application_names(self) -> None:
        environ = {"PORT": "8080"}

        prepare_environment(environ, ["N8N_PORT"])

        assert environ["N8N_PORT"] == "8080"

    def test_default_port_when_platform_sets_none(self) -> None:
        environ: dict[str, str] = {}

        prepare_environment(environ, ["N8N_PORT"])

        assert environ == {"PORT": "5678", "N8N_PORT": "5678"}


class TestPostgresProbe:
    """Tests for the asyncpg-backed probe."""

    @pytest.mark.asyncio
    async def test_select_one_succeeds(self) -> None:
        conn = mock.AsyncMock()
        conn.fetchval.return_value = 1

        with mock.patch(
            "provisioner.readiness.asyncpg.connect", new=mock.AsyncMock(return_value=conn)
        ) as connect:
            assert await postgres_probe(postgres_config())() is True

        assert connect.await_args.kwargs["database"] == "n8n"
        assert connect.await_args.kwargs["timeout"] == 5.0
        conn.fetchval.assert_awaited_once_with("SELECT 1")
        conn.close.assert_awaited_once()

    @pytest.mark.parametrize("error", [OSError("refused"), asyncio.TimeoutError()])
    @pytest.mark.asyncio
    async def test_connect_failure_is_not_ready(self, error: Exception) -> None:
        with mock.patch(
            "provisioner.readiness.asyncpg.connect", new=mock.AsyncMock(side_effect=error)
        ):
            assert await postgres_probe(postgres_config())() is False

    @pytest.mark.asyncio
    async def test_connection_closed_after_query_failure(self) -> None:
        conn = mock.AsyncMock()
        conn.fetchval.side_effect = asyncpg.InterfaceError("connection is closed")

        with mock.patch(
            "provisioner.readiness.asyncpg.connect", new=mock.AsyncMock(return_value=conn)
        ):
            assert await postgres_probe(postgres_config())() is False

        conn.close.assert_awaited_once()


class TestRunGate:
    """Tests for the gate entry point."""

    @pytest.mark.asyncio
    async def test_ready_execs_command(self, fake_sleep) -> None:
        execvpe = mock.Mock()
        environ = {"PORT": "8080"}

        code = await run_gate(
            postgres_config(),
            ["n8n", "start"],
            port_env_names=["N8N_PORT"],
            probe=scripted_probe([False, True]),
            sleep=fake_sleep,
            environ=environ,
            execvpe=execvpe,
        )

        assert code == 0
        execvpe.assert_called_once_with("n8n", ["n8n", "start"], environ)
        assert environ["N8N_PORT"] == "8080"

    @pytest.mark.asyncio
    async def test_failure_never_execs(self, fake_sleep, sleeps: list[float]) -> None:
        execvpe = mock.Mock()

        with pytest.raises(DependencyUnavailable, match="after 3 attempts"):
            await run_gate(
                postgres_config(),
                ["n8n"],
                probe=scripted_probe([False] * 3),
                sleep=fake_sleep,
                environ={},
                execvpe=execvpe,
            )

        execvpe.assert_not_called()
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_non_postgres_skips_check(self) -> None:
        execvpe = mock.Mock()
        probe = scripted_probe([])

        await run_gate(
            GateConfig(db_type="sqlite"),
            ["n8n"],
            probe=probe,
            environ={},
            execvpe=execvpe,
        )

        assert probe.calls == []
        execvpe.assert_called_once()

    @pytest.mark.asyncio
    async def test_empty_command_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            await run_gate(GateConfig(db_type="sqlite"), [], environ={}, execvpe=mock.Mock())
