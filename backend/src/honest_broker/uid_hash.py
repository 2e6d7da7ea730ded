"""Keyed, deterministic hashing of DICOM UIDs."""

from __future__ import annotations

import hashlib
import logging
from typing import Optional

from pydicom.uid import UID
from sqlalchemy.exc import SQLAlchemyError

from .errors import ConflictError, InvalidInputError
from .store import CrosswalkStore


logger = logging.getLogger(__name__)

UID_ROOT = "2.25."
UID_DIGEST_SIZE = 16


class UidHasher:
    """Maps UIDs to ``2.25.<integer>`` UIDs derived from a keyed BLAKE2b digest.

    Output is stable across restarts for the same key and cannot be recomputed
    without it.
    """

    def __init__(self, key: str, store: Optional[CrosswalkStore] = None) -> None:
        if not key:
            raise ValueError("UID hash key must not be empty")
        self._key = key.encode("utf-8")[:64]
        self._store = store

    def hash(self, uid: str) -> str:
        cleaned = (uid or "").strip().rstrip("\x00")
        if not cleaned:
            raise InvalidInputError("UID must not be empty")
        digest = hashlib.blake2b(cleaned.encode("ascii", "replace"), key=self._key, digest_size=UID_DIGEST_SIZE)
        hashed = UID(UID_ROOT + str(int.from_bytes(digest.digest(), "big")))
        if not hashed.is_valid:  # pragma: no cover - 2.25 + 39 digits is always valid
            raise InvalidInputError(f"Generated UID is not valid: {hashed}")
        return str(hashed)

    def hash_and_record(self, broker_name: str, uid: str, uid_type: str) -> str:
        """Hash ``uid`` and record the pair for audit; recording failures never block hashing."""

        hashed = self.hash(uid)
        if self._store is None:
            return hashed
        try:
            self._store.put(broker_name, uid_type, uid.strip().rstrip("\x00"), hashed)
        except ConflictError:
            logger.warning("UID mapping for broker %s (%s) already recorded with a different key", broker_name, uid_type)
        except SQLAlchemyError as exc:
            logger.warning("Failed to record UID mapping for broker %s (%s): %s", broker_name, uid_type, exc)
        return hashed
