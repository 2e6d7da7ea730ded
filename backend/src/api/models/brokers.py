"""Pydantic schemas for honest broker administration and lookups."""

from __future__ import annotations

import datetime as dt
from typing import Optional

from pydantic import BaseModel, Field

from honest_broker.config import IdType


class LookupPayload(BaseModel):
    id_in: str = Field(..., min_length=1)
    id_type: str = IdType.PATIENT_ID.value
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class LookupResponse(BaseModel):
    broker_name: str
    id_in: str
    id_type: str
    id_out: str


class ReverseLookupPayload(BaseModel):
    id_out: str = Field(..., min_length=1)
    id_type: Optional[str] = None


class DeidentifyPayload(BaseModel):
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None


class HashUidPayload(BaseModel):
    uid: str = Field(..., min_length=1)
    uid_type: str = "study_uid"


class HashUidResponse(BaseModel):
    broker_name: str
    uid: str
    hashed_uid: str


class DateShiftResponse(BaseModel):
    broker_name: str
    days: int
    shifted: Optional[str] = None


class DeleteBrokerResponse(BaseModel):
    broker_name: str
    mappings_deleted: int


class PurgeResponse(BaseModel):
    broker_name: str
    id_type: Optional[str] = None
    mappings_deleted: int


class CacheClearResponse(BaseModel):
    caches_cleared: int


class CreateCrosswalkBackupPayload(BaseModel):
    note: Optional[str] = None


class CrosswalkBackupInfo(BaseModel):
    filename: str
    path: str
    size_bytes: int
    created_at: dt.datetime
    note: Optional[str] = None


class CleanupBackupsResponse(BaseModel):
    removed: list[str]
