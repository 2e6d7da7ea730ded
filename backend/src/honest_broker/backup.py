"""Snapshot backups for SQLite-backed crosswalk databases."""

from __future__ import annotations

import datetime as dt
import json
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import Engine

from .errors import BackupError


logger = logging.getLogger(__name__)

BACKUP_PREFIX = "crosswalk"
BACKUP_SUFFIX = ".db"
METADATA_SUFFIX = ".json"


@dataclass(frozen=True)
class BackupInfo:
    filename: str
    path: Path
    size_bytes: int
    created_at: dt.datetime
    note: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "filename": self.filename,
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat(),
            "note": self.note,
        }


class CrosswalkBackupManager:
    """Create, list, restore and prune crosswalk snapshots.

    Snapshots use SQLite's online backup API so they are consistent while
    lookups keep writing. Each snapshot gets a ``.json`` sidecar with its note.
    """

    def __init__(
        self,
        engine: Engine,
        directory: Path,
        *,
        max_backups: int = 10,
        retention_days: int = 30,
    ) -> None:
        if engine.dialect.name != "sqlite":
            raise BackupError("Crosswalk backups are only supported for SQLite databases")
        self.engine = engine
        self.directory = Path(directory).expanduser().resolve()
        self.max_backups = max_backups
        self.retention_days = retention_days
        self.directory.mkdir(parents=True, exist_ok=True)

    def _metadata_path(self, backup_path: Path) -> Path:
        return Path(f"{backup_path}{METADATA_SUFFIX}")

    def _resolve(self, filename: str) -> Path:
        name = Path(filename).name
        if name != filename or not name.endswith(BACKUP_SUFFIX):
            raise BackupError(f"Invalid backup name: {filename}")
        path = self.directory / name
        if not path.exists():
            raise BackupError(f"Backup not found: {filename}")
        return path

    def _copy_into(self, target: sqlite3.Connection) -> None:
        with self.engine.connect() as conn:
            source = conn.connection.driver_connection
            source.backup(target)

    def create_backup(self, *, note: Optional[str] = None, label: str = BACKUP_PREFIX) -> BackupInfo:
        timestamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.directory / f"{label}_{timestamp}{BACKUP_SUFFIX}"
        target = sqlite3.connect(str(path))
        try:
            self._copy_into(target)
            # Snapshots are single self-contained files.
            target.execute("PRAGMA journal_mode=DELETE")
        except sqlite3.Error as exc:
            path.unlink(missing_ok=True)
            raise BackupError(f"Crosswalk backup failed: {exc}") from exc
        finally:
            target.close()

        metadata = {"filename": path.name, "created_at": dt.datetime.now(dt.timezone.utc).isoformat()}
        if note:
            metadata["note"] = note
        try:
            self._metadata_path(path).write_text(json.dumps(metadata, indent=2, sort_keys=True))
        except OSError:  # pragma: no cover - best effort persistence
            logger.warning("Failed to write metadata for backup %s", path, exc_info=True)

        logger.info("Created crosswalk backup %s", path.name)
        self.cleanup(keep=path.name)
        return self._info(path)

    def _info(self, path: Path) -> BackupInfo:
        stat = path.stat()
        note = None
        metadata_path = self._metadata_path(path)
        if metadata_path.exists():
            try:
                note = json.loads(metadata_path.read_text()).get("note")
            except (OSError, ValueError):
                logger.warning("Unreadable metadata for backup %s", path.name)
        return BackupInfo(
            filename=path.name,
            path=path,
            size_bytes=stat.st_size,
            created_at=dt.datetime.fromtimestamp(stat.st_mtime, dt.timezone.utc),
            note=note,
        )

    def list_backups(self) -> list[BackupInfo]:
        """Backups newest first."""

        paths = [path for path in self.directory.glob(f"*{BACKUP_SUFFIX}") if path.is_file()]
        infos = [self._info(path) for path in paths]
        return sorted(infos, key=lambda info: (info.created_at, info.filename), reverse=True)

    def restore(self, filename: str) -> BackupInfo:
        """Replace the live crosswalk with a snapshot, keeping a pre-restore backup first."""

        path = self._resolve(filename)
        self.create_backup(note=f"Automatic backup before restoring {path.name}", label=f"{BACKUP_PREFIX}_pre_restore")
        source = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        try:
            with self.engine.connect() as conn:
                source.backup(conn.connection.driver_connection)
        except sqlite3.Error as exc:
            raise BackupError(f"Crosswalk restore failed: {exc}") from exc
        finally:
            source.close()
        logger.warning("Crosswalk restored from backup %s", path.name)
        return self._info(path)

    def delete_backup(self, filename: str) -> None:
        path = self._resolve(filename)
        path.unlink()
        self._metadata_path(path).unlink(missing_ok=True)
        logger.info("Deleted crosswalk backup %s", path.name)

    def cleanup(self, *, keep: Optional[str] = None) -> list[str]:
        """Delete backups beyond ``max_backups`` or older than ``retention_days``."""

        cutoff = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=self.retention_days)
        removed: list[str] = []
        for index, info in enumerate(self.list_backups()):
            if info.filename == keep:
                continue
            if index >= self.max_backups or info.created_at < cutoff:
                self.delete_backup(info.filename)
                removed.append(info.filename)
        if removed:
            logger.info("Removed %d old crosswalk backup(s)", len(removed))
        return removed
