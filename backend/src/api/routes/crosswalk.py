"""Crosswalk audit, export and backup API routes."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse

from honest_broker.backup import CrosswalkBackupManager
from honest_broker.errors import HonestBrokerError
from honest_broker.models import CrosswalkLogEntry
from honest_broker.registry import BrokerRegistry

from api.models.brokers import CleanupBackupsResponse, CreateCrosswalkBackupPayload, CrosswalkBackupInfo
from api.utils.dependencies import get_backup_manager, get_registry
from api.utils.errors import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/crosswalk", tags=["crosswalk"])


@router.get("/export")
def export_all_endpoint(registry: BrokerRegistry = Depends(get_registry)):
    """Stream every broker's crosswalk as CSV (with a brokerName column)."""
    return StreamingResponse(
        registry.export_crosswalk(None),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="crosswalk_all.csv"'},
    )


@router.get("/stats")
def stats_endpoint(registry: BrokerRegistry = Depends(get_registry)):
    return registry.crosswalk_stats()


@router.get("/logs", response_model=list[CrosswalkLogEntry])
def logs_endpoint(
    limit: int = Query(100, ge=1, le=1000),
    broker: Optional[str] = Query(None),
    registry: BrokerRegistry = Depends(get_registry),
):
    return registry.store.recent_logs(limit=limit, broker_name=broker)


@router.get("/backups", response_model=list[CrosswalkBackupInfo])
def list_backups_endpoint(manager: CrosswalkBackupManager = Depends(get_backup_manager)):
    return [CrosswalkBackupInfo(**info.as_dict()) for info in manager.list_backups()]


@router.post("/backups", response_model=CrosswalkBackupInfo, status_code=status.HTTP_201_CREATED)
def create_backup_endpoint(
    payload: Optional[CreateCrosswalkBackupPayload] = None,
    manager: CrosswalkBackupManager = Depends(get_backup_manager),
):
    try:
        info = manager.create_backup(note=payload.note if payload else None)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc
    return CrosswalkBackupInfo(**info.as_dict())


@router.post("/backups/{filename}/restore", response_model=CrosswalkBackupInfo)
def restore_backup_endpoint(
    filename: str,
    manager: CrosswalkBackupManager = Depends(get_backup_manager),
    registry: BrokerRegistry = Depends(get_registry),
):
    """Restore a snapshot; cached lookups are dropped so reads come from the restored store."""
    try:
        info = manager.restore(filename)
    except HonestBrokerError as exc:
        logger.error("Crosswalk restore from %s failed: %s", filename, exc)
        raise to_http_exception(exc) from exc
    registry.clear_cache()
    return CrosswalkBackupInfo(**info.as_dict())


@router.delete("/backups/{filename}", status_code=status.HTTP_204_NO_CONTENT)
def delete_backup_endpoint(filename: str, manager: CrosswalkBackupManager = Depends(get_backup_manager)):
    try:
        manager.delete_backup(filename)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/backups/cleanup", response_model=CleanupBackupsResponse)
def cleanup_backups_endpoint(manager: CrosswalkBackupManager = Depends(get_backup_manager)):
    return CleanupBackupsResponse(removed=manager.cleanup())
