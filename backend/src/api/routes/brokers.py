"""Honest broker administration and lookup API routes."""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from honest_broker.errors import HonestBrokerError
from honest_broker.models import CrosswalkEntry
from honest_broker.registry import (
    BrokerRegistry,
    BrokerSummary,
    ConnectionTestResult,
    DeidentifiedPatient,
    ReverseLookupResult,
)

from api.models.brokers import (
    CacheClearResponse,
    DateShiftResponse,
    DeidentifyPayload,
    DeleteBrokerResponse,
    HashUidPayload,
    HashUidResponse,
    LookupPayload,
    LookupResponse,
    PurgeResponse,
    ReverseLookupPayload,
)
from api.utils.dependencies import get_registry
from api.utils.errors import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/brokers", tags=["brokers"])

MASKED_PASSWORD = "********"


def _keep_stored_password(registry: BrokerRegistry, name: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Re-use the stored password when an edit sends back the masked placeholder."""
    remote = payload.get("remote")
    if not isinstance(remote, dict) or remote.get("password") not in (None, MASKED_PASSWORD):
        return payload
    try:
        existing = registry.get_broker_config(name).remote
    except HonestBrokerError:
        existing = None
    merged = dict(remote)
    merged["password"] = existing.password.get_secret_value() if existing is not None else ""
    return {**payload, "remote": merged}


@router.get("", response_model=list[BrokerSummary])
def list_brokers_endpoint(registry: BrokerRegistry = Depends(get_registry)):
    """List configured brokers with their mapping counts."""
    return registry.list_brokers()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_broker_endpoint(
    payload: dict[str, Any] = Body(...),
    registry: BrokerRegistry = Depends(get_registry),
):
    """Create a broker from a configuration payload."""
    try:
        broker = registry.create_broker(payload)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc
    return broker.public_dict()


@router.post("/cache/clear", response_model=CacheClearResponse)
def clear_all_caches_endpoint(registry: BrokerRegistry = Depends(get_registry)):
    """Clear the lookup caches and remote tokens of every broker."""
    return CacheClearResponse(caches_cleared=registry.clear_cache())


@router.get("/{name}", response_model=BrokerSummary)
def get_broker_endpoint(name: str, registry: BrokerRegistry = Depends(get_registry)):
    try:
        return registry.get_broker(name)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{name}/config")
def get_broker_config_endpoint(name: str, registry: BrokerRegistry = Depends(get_registry)):
    """Return the broker configuration with the remote password masked."""
    try:
        return registry.get_broker_config(name).public_dict()
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc


@router.put("/{name}")
def update_broker_endpoint(
    name: str,
    payload: dict[str, Any] = Body(...),
    registry: BrokerRegistry = Depends(get_registry),
):
    try:
        broker = registry.update_broker(name, _keep_stored_password(registry, name, payload))
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc
    return broker.public_dict()


@router.delete("/{name}", response_model=DeleteBrokerResponse)
def delete_broker_endpoint(
    name: str,
    confirm: bool = Query(False, description="Required: deletes every crosswalk entry of the broker"),
    registry: BrokerRegistry = Depends(get_registry),
):
    try:
        deleted = registry.delete_broker(name, confirm=confirm)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc
    return DeleteBrokerResponse(broker_name=name, mappings_deleted=deleted)


def _lookup(name: str, payload: LookupPayload, registry: BrokerRegistry) -> LookupResponse:
    try:
        id_out = registry.lookup(name, payload.id_in, payload.id_type, timeout=payload.timeout_seconds)
    except HonestBrokerError as exc:
        logger.warning("Lookup on broker %s failed: %s", name, exc.kind)
        raise to_http_exception(exc) from exc
    return LookupResponse(broker_name=name, id_in=payload.id_in, id_type=payload.id_type, id_out=id_out)


@router.post("/{name}/lookup", response_model=LookupResponse)
def lookup_endpoint(name: str, payload: LookupPayload, registry: BrokerRegistry = Depends(get_registry)):
    """Resolve (and on first use create) the surrogate for an identifier."""
    return _lookup(name, payload, registry)


@router.post("/{name}/test-lookup", response_model=LookupResponse)
def test_lookup_endpoint(name: str, payload: LookupPayload, registry: BrokerRegistry = Depends(get_registry)):
    """Console test lookup; runs the production lookup unchanged."""
    return _lookup(name, payload, registry)


@router.post("/{name}/reverse", response_model=ReverseLookupResult)
def reverse_lookup_endpoint(
    name: str,
    payload: ReverseLookupPayload,
    registry: BrokerRegistry = Depends(get_registry),
):
    try:
        result = registry.reverse_lookup(name, payload.id_out, payload.id_type)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc
    if result is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "MappingNotFound", "message": f"No mapping found for '{payload.id_out}'"},
        )
    return result


@router.post("/{name}/deidentify", response_model=DeidentifiedPatient)
def deidentify_endpoint(
    name: str,
    payload: DeidentifyPayload,
    registry: BrokerRegistry = Depends(get_registry),
):
    try:
        return registry.deidentify(name, patient_id=payload.patient_id, patient_name=payload.patient_name)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{name}/date-shift", response_model=DateShiftResponse)
def date_shift_endpoint(
    name: str,
    patient_key: str = Query(..., min_length=1),
    value: Optional[str] = Query(None, description="Optional date to shift (DICOM DA or ISO)"),
    registry: BrokerRegistry = Depends(get_registry),
):
    try:
        days = registry.get_date_shift(name, patient_key)
        shifted = registry.shift_date(name, patient_key, value) if value else None
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc
    return DateShiftResponse(broker_name=name, days=days, shifted=shifted)


@router.post("/{name}/hash-uid", response_model=HashUidResponse)
def hash_uid_endpoint(name: str, payload: HashUidPayload, registry: BrokerRegistry = Depends(get_registry)):
    try:
        hashed = registry.hash_uid(name, payload.uid, payload.uid_type)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc
    return HashUidResponse(broker_name=name, uid=payload.uid, hashed_uid=hashed)


@router.post("/{name}/test-connection", response_model=ConnectionTestResult)
def test_connection_endpoint(name: str, registry: BrokerRegistry = Depends(get_registry)):
    try:
        return registry.test_connection(name)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{name}/cache/clear", response_model=CacheClearResponse)
def clear_cache_endpoint(name: str, registry: BrokerRegistry = Depends(get_registry)):
    try:
        return CacheClearResponse(caches_cleared=registry.clear_cache(name))
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{name}/purge", response_model=PurgeResponse)
def purge_endpoint(
    name: str,
    confirm: bool = Query(False),
    id_type: Optional[str] = Query(None),
    registry: BrokerRegistry = Depends(get_registry),
):
    try:
        deleted = registry.purge(name, id_type, confirm=confirm)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc
    return PurgeResponse(broker_name=name, id_type=id_type, mappings_deleted=deleted)


@router.get("/{name}/crosswalk", response_model=list[CrosswalkEntry])
def list_crosswalk_endpoint(
    name: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    id_type: Optional[str] = Query(None),
    registry: BrokerRegistry = Depends(get_registry),
):
    try:
        return registry.list_crosswalk(name, limit=limit, offset=offset, id_type=id_type)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{name}/crosswalk/export")
def export_crosswalk_endpoint(name: str, registry: BrokerRegistry = Depends(get_registry)):
    """Stream one broker's crosswalk as CSV."""
    try:
        lines = registry.export_crosswalk(name)
    except HonestBrokerError as exc:
        raise to_http_exception(exc) from exc
    return StreamingResponse(
        lines,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="crosswalk_{name}.csv"'},
    )
