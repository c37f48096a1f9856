import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from src.adapters.clock import SystemClock
from src.app_shell.config import (
    PipelineConfig,
    build_database,
    pipeline_config,
    rules_path,
)
from src.components.outbox import PublishConfig
from src.core.ports.db import DatabasePort
from src.core.ports.time import TimePort
from src.rules.loader import load_rules
from src.rules.models import Rules


# --- Settings ---
class Settings:
    def __init__(self) -> None:
        self.base_dir = Path(os.getcwd())
        self.rules_path = rules_path()


@lru_cache
def get_settings() -> Settings:
    return Settings()


# --- Rules ---
@lru_cache
def _load_rules(path: Path) -> Rules:
    return load_rules(path)


def get_rules(settings: Settings = Depends(get_settings)) -> Rules:
    return _load_rules(settings.rules_path)


def get_pipeline_config(rules: Rules = Depends(get_rules)) -> PipelineConfig:
    return pipeline_config(rules)


def get_publish_config(
    cfg: PipelineConfig = Depends(get_pipeline_config),
) -> PublishConfig:
    return cfg.publish


# --- Adapters ---
@lru_cache
def _database_for(path: Path) -> DatabasePort:
    return build_database(_load_rules(path))


def get_database(settings: Settings = Depends(get_settings)) -> DatabasePort:
    return _database_for(settings.rules_path)


def get_clock() -> TimePort:
    return SystemClock()


# --- Caller identity ---
def get_caller_id(
    x_caller_id: Annotated[str | None, Header()] = None,
) -> str:
    """
    Identify the caller owning idempotency keys.

    Authentication happens upstream; the gateway forwards the caller id.
    """
    if not x_caller_id or not x_caller_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity",
        )
    return x_caller_id.strip()
