"""Request-scoped accessors for application state."""
from __future__ import annotations

from fastapi import Request

from honest_broker.backup import CrosswalkBackupManager
from honest_broker.errors import BackupError
from honest_broker.registry import BrokerRegistry
from honest_broker.settings import build_backup_manager

from api.utils.errors import to_http_exception


def get_registry(request: Request) -> BrokerRegistry:
    return request.app.state.registry


def get_backup_manager(request: Request) -> CrosswalkBackupManager:
    manager = getattr(request.app.state, "backup_manager", None)
    if manager is None:
        try:
            manager = build_backup_manager(request.app.state.registry)
        except BackupError as exc:
            raise to_http_exception(exc) from exc
        request.app.state.backup_manager = manager
    return manager
