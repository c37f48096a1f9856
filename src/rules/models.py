from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProjectRules(_Section):
    slug: str
    rules_version: str


class DatabaseRules(_Section):
    backend: Literal["sqlite", "postgres"] = "sqlite"
    sqlite_path: str = "newsletter.db"
    postgres_dsn_env: str = "NEWSLETTER_DATABASE_URL"
    busy_timeout_seconds: float = Field(default=5.0, gt=0)
    nowait_timeout_seconds: float = Field(default=0.05, gt=0)
    migrations_dir: str = "migrations"


class IdempotencyRules(_Section):
    max_key_length: int = Field(default=50, ge=1)
    claim_grace_seconds: int = Field(default=300, ge=0)
    retention_minutes: int = Field(default=1440, ge=1)


class DeliveryRules(_Section):
    workers: int = Field(default=2, ge=1)
    empty_queue_sleep_seconds: float = Field(default=10.0, ge=0)
    transient_error_sleep_seconds: float = Field(default=1.0, ge=0)
    max_attempts: int = Field(default=1, ge=1)
    retry_backoff_seconds: list[float] = Field(default_factory=lambda: [60.0, 300.0, 900.0])
    fatal_error_park_seconds: float = Field(default=300.0, ge=0)


class PurgeRules(_Section):
    enabled: bool = True
    error_sleep_seconds: float = Field(default=1.0, ge=0)


class EmailRules(_Section):
    provider: Literal["dev", "http"] = "dev"
    base_url: str = "https://api.postmarkapp.com"
    sender: str = "newsletter@example.com"
    token_env: str = "NEWSLETTER_EMAIL_TOKEN"
    timeout_seconds: float = Field(default=10.0, gt=0)


class PublishRules(_Section):
    redirect_to: str = "/admin/newsletters"
    max_title_length: int = Field(default=200, ge=1)


class Rules(BaseModel):
    project: ProjectRules
    database: DatabaseRules = Field(default_factory=DatabaseRules)
    idempotency: IdempotencyRules = Field(default_factory=IdempotencyRules)
    delivery: DeliveryRules = Field(default_factory=DeliveryRules)
    purge: PurgeRules = Field(default_factory=PurgeRules)
    email: EmailRules = Field(default_factory=EmailRules)
    publish: PublishRules = Field(default_factory=PublishRules)

    model_config = ConfigDict(extra="forbid")
