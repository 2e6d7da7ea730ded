import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from db.config import DatabaseSettings
from db.session import create_db_engine
from honest_broker.backup import CrosswalkBackupManager
from honest_broker.errors import BackupError
from honest_broker.store import CrosswalkStore


@pytest.fixture
def store(tmp_path: Path) -> CrosswalkStore:
    engine = create_db_engine(DatabaseSettings(url=f"sqlite+pysqlite:///{tmp_path / 'crosswalk.db'}"))
    store = CrosswalkStore(engine)
    yield store
    store.dispose()


def test_create_and_list_backups(store: CrosswalkStore, tmp_path: Path):
    store.put("demo", "patient_id", "P001", "SUBJ-0001")
    manager = CrosswalkBackupManager(store.engine, tmp_path / "backups")

    info = manager.create_backup(note="before import")

    assert info.path.exists()
    assert info.filename.startswith("crosswalk_")
    assert info.filename.endswith(".db")
    assert info.note == "before import"
    metadata = json.loads(Path(f"{info.path}.json").read_text())
    assert metadata["note"] == "before import"
    assert [backup.filename for backup in manager.list_backups()] == [info.filename]
    assert info.as_dict()["size_bytes"] > 0


def test_restore_rolls_back_and_keeps_safety_copy(store: CrosswalkStore, tmp_path: Path):
    store.put("demo", "patient_id", "P001", "SUBJ-0001")
    manager = CrosswalkBackupManager(store.engine, tmp_path / "backups")
    snapshot = manager.create_backup()
    store.put("demo", "patient_id", "P002", "SUBJ-0002")

    manager.restore(snapshot.filename)

    assert store.count("demo") == 1
    assert store.get("demo", "patient_id", "P002") is None
    names = [backup.filename for backup in manager.list_backups()]
    assert any(name.startswith("crosswalk_pre_restore_") for name in names)


def test_cleanup_keeps_newest(store: CrosswalkStore, tmp_path: Path):
    manager = CrosswalkBackupManager(store.engine, tmp_path / "backups", max_backups=2)

    created = [manager.create_backup(note=str(index)).filename for index in range(4)]

    remaining = [backup.filename for backup in manager.list_backups()]
    assert len(remaining) == 2
    assert created[-1] in remaining


def test_delete_backup(store: CrosswalkStore, tmp_path: Path):
    manager = CrosswalkBackupManager(store.engine, tmp_path / "backups")
    info = manager.create_backup(note="x")

    manager.delete_backup(info.filename)

    assert manager.list_backups() == []
    assert not Path(f"{info.path}.json").exists()


@pytest.mark.parametrize("filename", ["../crosswalk.db", "notes.txt", "missing.db"])
def test_invalid_backup_names(store: CrosswalkStore, tmp_path: Path, filename: str):
    manager = CrosswalkBackupManager(store.engine, tmp_path / "backups")

    with pytest.raises(BackupError):
        manager.restore(filename)


def test_only_sqlite_is_supported(tmp_path: Path):
    engine = SimpleNamespace(dialect=SimpleNamespace(name="postgresql"))

    with pytest.raises(BackupError, match="only supported"):
        CrosswalkBackupManager(engine, tmp_path / "backups")
