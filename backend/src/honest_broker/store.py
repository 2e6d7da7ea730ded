"""Durable crosswalk of original identifiers to surrogate values.

The crosswalk table is the single source of truth and the audit record for the
honest broker. Mappings are append-only: ``put`` never overwrites an existing
``id_out`` and reports a ``ConflictError`` instead.
"""

from __future__ import annotations

import csv
import io
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from db.session import get_engine, make_session_factory, session_scope

from .errors import ConflictError, LookupTimeoutError
from .models import Base, CrosswalkEntry, CrosswalkLog, CrosswalkLogEntry, CrosswalkMapping


logger = logging.getLogger(__name__)

EXPORT_COLUMNS = ("idIn", "idOut", "idType", "createdAt")
EXPORT_BATCH_SIZE = 1000


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value is not None else ""


def _csv_line(values: Iterable[str]) -> str:
    buffer = io.StringIO()
    csv.writer(buffer, lineterminator="\n").writerow(list(values))
    return buffer.getvalue()


class CrosswalkStore:
    """SQLAlchemy-backed crosswalk table plus its operation log."""

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self.engine = engine or get_engine()
        self._session_factory = make_session_factory(self.engine)
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self, timeout: Optional[float] = None) -> Iterator[Session]:
        """Session scope; ``timeout`` caps how long SQLite waits on another writer."""

        with session_scope(self._session_factory) as session:
            if timeout is None or self.engine.dialect.name != "sqlite":
                yield session
                return
            raw = session.connection().connection.dbapi_connection
            previous = raw.execute("PRAGMA busy_timeout").fetchone()[0]
            raw.execute(f"PRAGMA busy_timeout = {max(1, int(timeout * 1000))}")
            try:
                yield session
            finally:
                raw.execute(f"PRAGMA busy_timeout = {int(previous)}")

    # ------------------------------------------------------------------ lookups

    def get(self, broker_name: str, id_type: str, id_in: str, *, timeout: Optional[float] = None) -> Optional[str]:
        with self._session(timeout) as session:
            return session.execute(
                select(CrosswalkMapping.id_out).where(
                    CrosswalkMapping.broker_name == broker_name,
                    CrosswalkMapping.id_type == id_type,
                    CrosswalkMapping.id_in == id_in,
                )
            ).scalar_one_or_none()

    def get_entry(self, broker_name: str, id_type: str, id_in: str) -> Optional[CrosswalkEntry]:
        with self._session() as session:
            row = session.execute(
                select(CrosswalkMapping).where(
                    CrosswalkMapping.broker_name == broker_name,
                    CrosswalkMapping.id_type == id_type,
                    CrosswalkMapping.id_in == id_in,
                )
            ).scalar_one_or_none()
            return CrosswalkEntry.model_validate(row) if row is not None else None

    def find_id_in(self, broker_name: str, id_type: str, id_out: str) -> Optional[str]:
        """Return the original value already mapped to ``id_out``, if any (case-insensitive)."""

        with self._session() as session:
            return session.execute(
                select(CrosswalkMapping.id_in)
                .where(
                    CrosswalkMapping.broker_name == broker_name,
                    CrosswalkMapping.id_type == id_type,
                    func.upper(CrosswalkMapping.id_out) == id_out.upper(),
                )
                .order_by(CrosswalkMapping.id)
                .limit(1)
            ).scalar_one_or_none()

    def reverse_lookup(
        self, broker_name: str, id_out: str, id_type: Optional[str] = None
    ) -> Optional[CrosswalkEntry]:
        with self._session() as session:
            stmt = select(CrosswalkMapping).where(
                CrosswalkMapping.broker_name == broker_name,
                CrosswalkMapping.id_out == id_out,
            )
            if id_type is not None:
                stmt = stmt.where(CrosswalkMapping.id_type == id_type)
            row = session.execute(stmt.order_by(CrosswalkMapping.id).limit(1)).scalar_one_or_none()
            if row is None:
                return None
            entry = CrosswalkEntry.model_validate(row)
            session.add(
                CrosswalkLog(
                    broker_name=broker_name,
                    action="reverse_lookup",
                    id_in=entry.id_in,
                    id_out=entry.id_out,
                    id_type=entry.id_type,
                )
            )
        return entry

    # ------------------------------------------------------------------- writes

    def put(
        self,
        broker_name: str,
        id_type: str,
        id_in: str,
        id_out: str,
        *,
        details: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        """Atomically insert a mapping.

        Returns ``True`` when the row was created and ``False`` when the identical
        mapping already existed. Raises ``ConflictError`` when the key already
        maps to a different surrogate. With ``timeout``, waiting longer than that
        on a concurrent SQLite writer raises ``LookupTimeoutError``.
        """

        try:
            with self._session(timeout) as session:
                session.add(
                    CrosswalkMapping(broker_name=broker_name, id_type=id_type, id_in=id_in, id_out=id_out)
                )
                session.flush()
                session.add(
                    CrosswalkLog(
                        broker_name=broker_name,
                        action="create",
                        id_in=id_in,
                        id_out=id_out,
                        id_type=id_type,
                        details=details,
                    )
                )
        except IntegrityError as exc:
            existing = self.get(broker_name, id_type, id_in)
            if existing is None:
                raise
            if existing != id_out:
                raise ConflictError(broker_name, id_type, id_in, existing=existing, attempted=id_out) from exc
            return False
        except OperationalError as exc:
            if timeout is not None and "locked" in str(exc):
                raise LookupTimeoutError(f"Timed out after {timeout:.3f}s waiting to write the crosswalk") from exc
            raise
        logger.debug("Stored crosswalk mapping broker=%s type=%s", broker_name, id_type)
        return True

    def touch(self, broker_name: str, id_type: str, id_in: str) -> None:
        with self._session() as session:
            session.execute(
                update(CrosswalkMapping)
                .where(
                    CrosswalkMapping.broker_name == broker_name,
                    CrosswalkMapping.id_type == id_type,
                    CrosswalkMapping.id_in == id_in,
                )
                .values(updated_at=func.now())
            )

    def purge(self, broker_name: str, id_type: Optional[str] = None, *, action: str = "purge") -> int:
        """Delete mappings for a broker (optionally one id type). Irreversible."""

        with self._session() as session:
            stmt = delete(CrosswalkMapping).where(CrosswalkMapping.broker_name == broker_name)
            if id_type is not None:
                stmt = stmt.where(CrosswalkMapping.id_type == id_type)
            deleted = session.execute(stmt).rowcount or 0
            session.add(
                CrosswalkLog(
                    broker_name=broker_name,
                    action=action,
                    id_type=id_type,
                    details=f"{deleted} mapping(s) deleted",
                )
            )
        logger.warning("Deleted %d crosswalk mapping(s) for broker %s (%s)", deleted, broker_name, action)
        return deleted

    def delete_broker(self, broker_name: str) -> int:
        return self.purge(broker_name, action="delete_broker")

    # ------------------------------------------------------------------ queries

    def count(
        self,
        broker_name: str,
        id_type: Optional[str] = None,
        *,
        id_types: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> int:
        with self._session(timeout) as session:
            stmt = select(func.count()).select_from(CrosswalkMapping).where(CrosswalkMapping.broker_name == broker_name)
            if id_type is not None:
                stmt = stmt.where(CrosswalkMapping.id_type == id_type)
            if id_types is not None:
                stmt = stmt.where(CrosswalkMapping.id_type.in_(list(id_types)))
            return int(session.scalar(stmt) or 0)

    def total_count(self) -> int:
        with self._session() as session:
            return int(session.scalar(select(func.count()).select_from(CrosswalkMapping)) or 0)

    def counts_by_type(self, broker_name: Optional[str] = None) -> dict[str, dict[str, int]]:
        with self._session() as session:
            stmt = select(CrosswalkMapping.broker_name, CrosswalkMapping.id_type, func.count()).group_by(
                CrosswalkMapping.broker_name, CrosswalkMapping.id_type
            )
            if broker_name is not None:
                stmt = stmt.where(CrosswalkMapping.broker_name == broker_name)
            rows = session.execute(stmt).all()

        counts: dict[str, dict[str, int]] = {}
        for name, id_type, total in rows:
            counts.setdefault(name, {})[id_type] = int(total)
        return counts

    def list_entries(
        self,
        broker_name: str,
        limit: int = 100,
        offset: int = 0,
        id_type: Optional[str] = None,
    ) -> list[CrosswalkEntry]:
        with self._session() as session:
            stmt = select(CrosswalkMapping).where(CrosswalkMapping.broker_name == broker_name)
            if id_type is not None:
                stmt = stmt.where(CrosswalkMapping.id_type == id_type)
            rows = session.execute(
                stmt.order_by(CrosswalkMapping.created_at, CrosswalkMapping.id).limit(limit).offset(offset)
            ).scalars()
            return [CrosswalkEntry.model_validate(row) for row in rows]

    def export(self, broker_name: Optional[str] = None) -> Iterator[str]:
        """Stream the crosswalk as CSV lines (header first).

        A single-broker export has ``idIn,idOut,idType,createdAt``; the
        all-broker export prepends ``brokerName``.
        """

        include_broker = broker_name is None
        header = (("brokerName",) if include_broker else ()) + EXPORT_COLUMNS
        yield _csv_line(header)

        last_id = 0
        while True:
            with self._session() as session:
                stmt = select(CrosswalkMapping).where(CrosswalkMapping.id > last_id)
                if broker_name is not None:
                    stmt = stmt.where(CrosswalkMapping.broker_name == broker_name)
                rows = session.execute(stmt.order_by(CrosswalkMapping.id).limit(EXPORT_BATCH_SIZE)).scalars().all()
            if not rows:
                return
            for row in rows:
                values = [row.id_in, row.id_out, row.id_type, _iso(row.created_at)]
                if include_broker:
                    values.insert(0, row.broker_name)
                yield _csv_line(values)
            last_id = rows[-1].id

    # -------------------------------------------------------------- audit log

    def log_operation(
        self,
        broker_name: str,
        action: str,
        *,
        id_in: Optional[str] = None,
        id_out: Optional[str] = None,
        id_type: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        with self._session() as session:
            session.add(
                CrosswalkLog(
                    broker_name=broker_name,
                    action=action,
                    id_in=id_in,
                    id_out=id_out,
                    id_type=id_type,
                    details=details,
                )
            )

    def recent_logs(self, limit: int = 100, broker_name: Optional[str] = None) -> list[CrosswalkLogEntry]:
        with self._session() as session:
            stmt = select(CrosswalkLog)
            if broker_name is not None:
                stmt = stmt.where(CrosswalkLog.broker_name == broker_name)
            rows = session.execute(stmt.order_by(CrosswalkLog.id.desc()).limit(limit)).scalars()
            return [CrosswalkLogEntry.model_validate(row) for row in rows]

    def log_count(self) -> int:
        with self._session() as session:
            return int(session.scalar(select(func.count()).select_from(CrosswalkLog)) or 0)

    def dispose(self) -> None:
        self.engine.dispose()
