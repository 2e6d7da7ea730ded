"""Per-patient date offsets and helpers to apply them."""

from __future__ import annotations

import datetime as dt
import hashlib
import logging
import random
import re
from typing import Optional, Union

from dateutil import parser as date_parser

from .config import DATE_SHIFT_ID_TYPE, DateShiftPolicy
from .errors import ConflictError, ConfigurationError, InvalidInputError
from .store import CrosswalkStore


logger = logging.getLogger(__name__)

_DICOM_DA = re.compile(r"^\d{8}$")
_DICOM_DT = re.compile(r"^(\d{8})(\d{2,6}(?:\.\d{1,6})?)?([+-]\d{4})?$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def compute_offset(broker_name: str, patient_key: str, policy: DateShiftPolicy) -> int:
    """Deterministic offset in ``[min_days, max_days]`` seeded by the patient key.

    Zero is skipped whenever the range contains a non-zero value, so shifted
    dates never equal the originals.
    """

    seed_bytes = hashlib.sha256(f"{broker_name}\x1f{patient_key}".encode("utf-8")).digest()
    rng = random.Random(int.from_bytes(seed_bytes[:8], "big"))
    if policy.min_days == policy.max_days:
        return policy.min_days
    candidates = policy.max_days - policy.min_days + 1
    if policy.min_days <= 0 <= policy.max_days:
        pick = rng.randrange(candidates - 1)
        offset = policy.min_days + pick
        return offset + 1 if offset >= 0 else offset
    return policy.min_days + rng.randrange(candidates)


class DateShiftEngine:
    """Assigns each patient one persistent day offset per broker."""

    def __init__(self, store: CrosswalkStore) -> None:
        self._store = store

    def existing_offset(self, broker_name: str, patient_key: str) -> Optional[int]:
        stored = self._store.get(broker_name, DATE_SHIFT_ID_TYPE, patient_key)
        return self._parse(broker_name, stored) if stored is not None else None

    def offset_for(self, broker_name: str, patient_key: str, policy: DateShiftPolicy) -> int:
        if not patient_key or not patient_key.strip():
            raise InvalidInputError("Patient key for date shifting must not be empty")

        existing = self.existing_offset(broker_name, patient_key)
        if existing is not None:
            return existing

        offset = compute_offset(broker_name, patient_key, policy)
        try:
            self._store.put(broker_name, DATE_SHIFT_ID_TYPE, patient_key, str(offset))
        except ConflictError as exc:
            logger.warning("Date shift for broker %s was assigned concurrently; using stored value", broker_name)
            return self._parse(broker_name, exc.existing)
        logger.info("Assigned date shift for broker %s", broker_name)
        return offset

    @staticmethod
    def _parse(broker_name: str, stored: str) -> int:
        try:
            return int(stored)
        except ValueError as exc:
            raise ConfigurationError(f"Stored date shift for broker '{broker_name}' is not an integer") from exc


DateLike = Union[str, dt.date, dt.datetime]


def apply_date_shift(value: Optional[DateLike], days: int) -> Optional[DateLike]:
    """Shift a date value by ``days`` preserving its representation.

    Supports ``date``/``datetime`` objects, DICOM ``DA`` (``YYYYMMDD``) and
    ``DT`` strings, ISO dates, and anything else ``dateutil`` can parse (returned
    as an ISO date). Empty values are returned unchanged.
    """

    if value is None or days == 0:
        return value
    delta = dt.timedelta(days=days)
    if isinstance(value, (dt.date, dt.datetime)):
        return value + delta

    text = value.strip()
    if not text:
        return value
    if _DICOM_DA.match(text):
        shifted = dt.datetime.strptime(text, "%Y%m%d").date() + delta
        return shifted.strftime("%Y%m%d")
    dicom_dt = _DICOM_DT.match(text)
    if dicom_dt:
        shifted = dt.datetime.strptime(dicom_dt.group(1), "%Y%m%d").date() + delta
        return shifted.strftime("%Y%m%d") + (dicom_dt.group(2) or "") + (dicom_dt.group(3) or "")
    if _ISO_DATE.match(text):
        return (dt.date.fromisoformat(text) + delta).isoformat()
    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError) as exc:
        raise InvalidInputError(f"Unrecognised date value: {value!r}") from exc
    return (parsed.date() + delta).isoformat()
