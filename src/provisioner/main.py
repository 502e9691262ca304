"""Entry points for the provisioner and the container readiness gate.

Two processes use this package:
- The provisioning run (CI job or operator workstation): reconciles every
  managed resource once and exits 0 when nothing Failed.
- The readiness gate (container entrypoint): waits for the database, then
  execs the application. It exits 1 when the database never became reachable.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from .cloud import CloudClient
from .config import Config, ConfigurationError
from .gcp import GcpClients, GcpCloudClient
from .readiness import DependencyUnavailable, GateConfig, run_gate
from .reconciler import Reconciler, RunSummary
from .security import CredentialError, get_default_credentials
from .spec_loader import SpecLoadError, load_spec

logger = logging.getLogger(__name__)

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    root_logger = logging.getLogger()
    # Idempotent: the CLI may call this once per command
    if any(isinstance(h.formatter, JsonFormatter) for h in root_logger.handlers):
        root_logger.setLevel(level)
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Google SDKs
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


def build_cloud_client(config: Config) -> CloudClient:
    credentials = get_default_credentials(config.project_id)
    return GcpCloudClient(
        project_id=config.project_id,
        region=config.region,
        clients=GcpClients.create(credentials),
        operation_timeout_seconds=config.operation_timeout_seconds,
    )


async def reconcile(
    config: Config, client: CloudClient | None = None
) -> RunSummary | None:
    """Load the settings file and run one reconciliation.

    Returns:
        The run summary, or None if the settings file failed to load.
    """
    try:
        deployment = load_spec(config.spec_path)
    except SpecLoadError as e:
        logger.error(
            "Deployment spec loading failed",
            extra={"error": str(e), "spec_path": str(config.spec_path)},
        )
        return None

    if client is None:
        client = build_cloud_client(config)

    return await Reconciler(config, deployment, client).run()


async def main(echo: Callable[[str], None] | None = None, **overrides: object) -> int:
    """Run the provisioner.

    Args:
        echo: Receives the human-readable summary lines, if given.
        **overrides: Settings taking precedence over the environment.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()

    try:
        config = Config.from_env(**overrides)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting cloud provisioner",
        extra={
            "project": config.project_id,
            "region": config.region,
            "spec_path": str(config.spec_path),
            "dry_run": config.dry_run,
        },
    )

    try:
        summary = await reconcile(config)
    except CredentialError as e:
        logger.critical("No usable cloud credentials", extra={"error": str(e)})
        return 1
    except Exception as e:
        # Unexpected error - log with full traceback for debugging
        logger.exception("Provisioner failed unexpectedly", extra={"error": str(e)})
        return 1

    if summary is None:
        return 1
    if echo is not None:
        for line in summary.lines():
            echo(line)
    return summary.exit_code


async def wait_for_db(
    command: Sequence[str],
    port_env_names: Sequence[str] = (),
    **overrides: object,
) -> int:
    """Readiness gate entry point: wait for the database, then exec ``command``.

    Returns:
        Exit code. A successful handoff replaces the process and never returns.
    """
    setup_logging()

    try:
        gate_config = GateConfig.from_env(**overrides)
        return await run_gate(gate_config, command, port_env_names=port_env_names)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1
    except DependencyUnavailable as e:
        logger.error("Exiting: database never became reachable", extra={"error": str(e)})
        return 1
    except OSError as e:
        logger.error(
            "Failed to start application",
            extra={"command": command[0] if command else "", "error": str(e)},
        )
        return 1
