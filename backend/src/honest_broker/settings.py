"""Honest broker service settings and registry wiring."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.engine import Engine

from db.session import get_engine

from .backup import CrosswalkBackupManager
from .config import load_registry_config
from .registry import BrokerRegistry
from .sandbox import ScriptSandbox
from .store import CrosswalkStore


class BrokerSettings(BaseModel):
    config_path: Path = Path("resource/brokers.yaml")
    uid_hash_key: Optional[str] = None
    script_timeout_ms: int = 500
    script_workers: int = 2
    script_memory_mb: int = 512
    lookup_timeout_seconds: float = 30.0
    backup_directory: Path = Path("resource/backups/crosswalk")
    backup_max: int = 10
    backup_retention_days: int = 30


@lru_cache
def get_settings() -> BrokerSettings:
    defaults = BrokerSettings()
    return BrokerSettings(
        config_path=Path(os.getenv("HONEST_BROKER_CONFIG", str(defaults.config_path))),
        uid_hash_key=os.getenv("UID_HASH_KEY") or None,
        script_timeout_ms=int(os.getenv("SCRIPT_TIMEOUT_MS", str(defaults.script_timeout_ms))),
        script_workers=int(os.getenv("SCRIPT_WORKERS", str(defaults.script_workers))),
        script_memory_mb=int(os.getenv("SCRIPT_MEMORY_MB", str(defaults.script_memory_mb))),
        lookup_timeout_seconds=float(os.getenv("LOOKUP_TIMEOUT_SECONDS", str(defaults.lookup_timeout_seconds))),
        backup_directory=Path(os.getenv("CROSSWALK_BACKUP_DIR", str(defaults.backup_directory))),
        backup_max=int(os.getenv("CROSSWALK_BACKUP_MAX", str(defaults.backup_max))),
        backup_retention_days=int(
            os.getenv("CROSSWALK_BACKUP_RETENTION_DAYS", str(defaults.backup_retention_days))
        ),
    )


def build_registry(
    settings: Optional[BrokerSettings] = None,
    engine: Optional[Engine] = None,
) -> BrokerRegistry:
    """Create a registry from environment settings and the broker configuration file."""

    settings = settings or get_settings()
    store = CrosswalkStore(engine or get_engine())
    sandbox = ScriptSandbox(
        timeout_seconds=settings.script_timeout_ms / 1000,
        workers=settings.script_workers,
        memory_limit_mb=settings.script_memory_mb,
    )
    return BrokerRegistry(
        store,
        load_registry_config(settings.config_path),
        sandbox=sandbox,
        uid_hash_key=settings.uid_hash_key,
        default_timeout=settings.lookup_timeout_seconds,
        config_path=settings.config_path,
    )


def build_backup_manager(registry: BrokerRegistry, settings: Optional[BrokerSettings] = None) -> CrosswalkBackupManager:
    settings = settings or get_settings()
    return CrosswalkBackupManager(
        registry.store.engine,
        settings.backup_directory,
        max_backups=settings.backup_max,
        retention_days=settings.backup_retention_days,
    )
