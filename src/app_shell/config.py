"""
Process wiring from rules.yaml + environment.

Turns validated Rules into component configs and concrete adapters
(database, email transport). Secrets are only ever read from the
environment variables the rules name.
"""

import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from src.adapters.dev_email import DevEmailAdapter
from src.adapters.http_email import HttpEmailAdapter
from src.adapters.postgres_db import PostgresDatabase, PostgresMigrator
from src.adapters.sqlite.migrator import SQLiteMigrator
from src.adapters.sqlite_db import SQLiteDatabase
from src.components.delivery import DeliveryConfig
from src.components.ledger_purge import PurgeConfig
from src.components.outbox import PublishConfig
from src.core.ports.db import DatabasePort
from src.core.ports.email import EmailTransportPort
from src.rules.models import Rules

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
RULES_PATH_ENV = "NEWSLETTER_RULES_PATH"
DATA_DIR_ENV = "NEWSLETTER_DATA_DIR"


@dataclass(frozen=True)
class PipelineConfig:
    """Component configs derived from the rules."""

    publish: PublishConfig
    delivery: DeliveryConfig
    purge: PurgeConfig
    workers: int
    purge_enabled: bool


def pipeline_config(rules: Rules) -> PipelineConfig:
    return PipelineConfig(
        publish=PublishConfig(
            redirect_to=rules.publish.redirect_to,
            max_title_length=rules.publish.max_title_length,
            max_key_length=rules.idempotency.max_key_length,
            claim_grace_seconds=rules.idempotency.claim_grace_seconds,
        ),
        delivery=DeliveryConfig(
            empty_queue_sleep_seconds=rules.delivery.empty_queue_sleep_seconds,
            transient_error_sleep_seconds=rules.delivery.transient_error_sleep_seconds,
            max_attempts=rules.delivery.max_attempts,
            retry_backoff_seconds=tuple(rules.delivery.retry_backoff_seconds),
            fatal_error_park_seconds=rules.delivery.fatal_error_park_seconds,
        ),
        purge=PurgeConfig(
            retention_minutes=rules.idempotency.retention_minutes,
            error_sleep_seconds=rules.purge.error_sleep_seconds,
        ),
        workers=rules.delivery.workers,
        purge_enabled=rules.purge.enabled,
    )


def rules_path(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    return Path(env.get(RULES_PATH_ENV, str(PROJECT_ROOT / "rules.yaml")))


def data_dir(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    return Path(env.get(DATA_DIR_ENV, "."))


def required_env(rules: Rules) -> list[str]:
    """Environment variables the configured backends cannot run without."""
    names: list[str] = []
    if rules.database.backend == "postgres":
        names.append(rules.database.postgres_dsn_env)
    if rules.email.provider == "http":
        names.append(rules.email.token_env)
    return names


def validate_ops_rules(rules: Rules, environ: Mapping[str, str] | None = None) -> None:
    """
    Validate operational requirements before startup.

    Exits the process when a required environment variable is missing, or
    when a SQLite worker could hold the write lock through an HTTP send for
    longer than other writers wait for it.
    """
    env = os.environ if environ is None else environ
    missing = [name for name in required_env(rules) if not env.get(name)]

    if missing:
        print(
            f"CRITICAL: Missing required environment variables: {', '.join(missing)}",
            file=sys.stderr,
        )
        sys.exit(1)

    # A delivery worker keeps its transaction open for the whole send
    if (
        rules.database.backend == "sqlite"
        and rules.email.provider == "http"
        and rules.database.busy_timeout_seconds <= rules.email.timeout_seconds
    ):
        print(
            "CRITICAL: database.busy_timeout_seconds "
            f"({rules.database.busy_timeout_seconds}) must exceed email.timeout_seconds "
            f"({rules.email.timeout_seconds}) when SQLite is used with the http provider",
            file=sys.stderr,
        )
        sys.exit(1)

    logger.info(
        "Configuration validated (database=%s, email=%s)",
        rules.database.backend,
        rules.email.provider,
    )


def _migrations_dir(rules: Rules) -> Path:
    path = Path(rules.database.migrations_dir)
    return path if path.is_absolute() else PROJECT_ROOT / path


def sqlite_path(rules: Rules, environ: Mapping[str, str] | None = None) -> Path:
    path = Path(rules.database.sqlite_path)
    return path if path.is_absolute() else data_dir(environ) / path


def build_database(rules: Rules, environ: Mapping[str, str] | None = None) -> DatabasePort:
    env = os.environ if environ is None else environ
    db = rules.database
    if db.backend == "postgres":
        return PostgresDatabase(
            env[db.postgres_dsn_env],
            nowait_lock_timeout_ms=int(db.nowait_timeout_seconds * 1000),
        )
    return SQLiteDatabase(
        str(sqlite_path(rules, env)),
        busy_timeout_seconds=db.busy_timeout_seconds,
        nowait_timeout_seconds=db.nowait_timeout_seconds,
    )


def run_migrations(rules: Rules, environ: Mapping[str, str] | None = None) -> list[str]:
    env = os.environ if environ is None else environ
    migrations = _migrations_dir(rules)
    if rules.database.backend == "postgres":
        return PostgresMigrator(
            env[rules.database.postgres_dsn_env], str(migrations / "postgres")
        ).run_migrations()

    path = sqlite_path(rules, env)
    path.parent.mkdir(parents=True, exist_ok=True)
    return SQLiteMigrator(str(path), str(migrations)).run_migrations()


def build_email_transport(
    rules: Rules, environ: Mapping[str, str] | None = None
) -> EmailTransportPort:
    env = os.environ if environ is None else environ
    email = rules.email
    if email.provider == "http":
        return HttpEmailAdapter(
            base_url=email.base_url,
            sender=email.sender,
            authorization_token=env[email.token_env],
            timeout_seconds=email.timeout_seconds,
        )
    return DevEmailAdapter()
