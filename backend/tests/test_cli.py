from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from cli import app as cli_app
from db.config import DatabaseSettings
from db.session import create_db_engine
from honest_broker.backup import CrosswalkBackupManager
from honest_broker.config import BrokerConfig, RegistryConfig
from honest_broker.errors import ConfigurationError
from honest_broker.registry import BrokerRegistry
from honest_broker.store import CrosswalkStore

runner = CliRunner()


def _setup(monkeypatch, tmp_path: Path) -> BrokerRegistry:
    engine = create_db_engine(DatabaseSettings(url=f"sqlite+pysqlite:///{tmp_path / 'crosswalk.db'}"))
    config = RegistryConfig(
        brokers=(
            BrokerConfig(name="demo", naming_scheme="sequential"),
            BrokerConfig(name="shifted", date_shift={"enabled": True, "min_days": 3, "max_days": 3}),
        )
    )
    registry = BrokerRegistry(CrosswalkStore(engine), config)
    manager = CrosswalkBackupManager(engine, tmp_path / "backups")
    monkeypatch.setattr(cli_app, "build_registry", lambda: registry)
    monkeypatch.setattr(cli_app, "build_backup_manager", lambda _registry: manager)
    return registry


def test_lookup_and_reverse(monkeypatch, tmp_path):
    _setup(monkeypatch, tmp_path)

    result = runner.invoke(cli_app.app, ["lookup", "demo", "P001"])
    assert result.exit_code == 0
    assert result.output.strip() == "SUBJ-0001"

    name = runner.invoke(cli_app.app, ["lookup", "demo", "Doe^Jane", "--id-type", "patient_name"])
    assert name.output.strip() == "NAME-0002"

    reverse = runner.invoke(cli_app.app, ["reverse", "demo", "SUBJ-0001"])
    assert reverse.exit_code == 0
    assert reverse.output.strip().split("\t") == ["P001", "patient_id", "store"]

    missing = runner.invoke(cli_app.app, ["reverse", "demo", "SUBJ-9999"])
    assert missing.exit_code == 1


def test_errors_exit_with_kind(monkeypatch, tmp_path):
    _setup(monkeypatch, tmp_path)

    result = runner.invoke(cli_app.app, ["lookup", "missing", "P001"])

    assert result.exit_code == 1
    assert "BrokerNotFoundError" in result.output


def test_bootstrap_failure_is_reported(monkeypatch):
    def broken():
        raise ConfigurationError("Invalid broker configuration file brokers.yaml")

    monkeypatch.setattr(cli_app, "build_registry", broken)

    result = runner.invoke(cli_app.app, ["brokers", "list"])

    assert result.exit_code == 1
    assert "ConfigurationError" in result.output


def test_brokers_list_and_show(monkeypatch, tmp_path):
    _setup(monkeypatch, tmp_path)

    listing = runner.invoke(cli_app.app, ["brokers", "list"])
    assert listing.exit_code == 0
    assert "demo" in listing.output
    assert "shifted" in listing.output

    show = runner.invoke(cli_app.app, ["brokers", "show", "demo"])
    assert show.exit_code == 0
    assert "sequential" in show.output
    assert "Mappings: 0" in show.output

    test = runner.invoke(cli_app.app, ["brokers", "test", "demo"])
    assert test.exit_code == 0


def test_date_shift(monkeypatch, tmp_path):
    _setup(monkeypatch, tmp_path)

    result = runner.invoke(cli_app.app, ["date-shift", "shifted", "P001", "--value", "20240101"])

    assert result.exit_code == 0
    assert "Offset: 3 day(s)" in result.output
    assert "Shifted: 20240104" in result.output


def test_export_and_stats(monkeypatch, tmp_path):
    registry = _setup(monkeypatch, tmp_path)
    registry.lookup("demo", "P001")

    printed = runner.invoke(cli_app.app, ["export", "--broker", "demo"])
    assert printed.exit_code == 0
    assert printed.output.splitlines()[0] == "idIn,idOut,idType,createdAt"

    target = tmp_path / "out" / "crosswalk.csv"
    written = runner.invoke(cli_app.app, ["export", "--output", str(target)])
    assert written.exit_code == 0
    assert target.read_text().splitlines()[0] == "brokerName,idIn,idOut,idType,createdAt"

    stats = runner.invoke(cli_app.app, ["stats"])
    assert stats.exit_code == 0
    assert "patient_id" in stats.output


def test_cache_clear(monkeypatch, tmp_path):
    _setup(monkeypatch, tmp_path)

    result = runner.invoke(cli_app.app, ["cache", "clear"])

    assert result.exit_code == 0
    assert "Cleared 2 cache(s)." in result.output


def test_backup_commands(monkeypatch, tmp_path):
    registry = _setup(monkeypatch, tmp_path)
    registry.lookup("demo", "P001")

    assert runner.invoke(cli_app.app, ["backup", "list"]).output.strip() == "No backups found."

    created = runner.invoke(cli_app.app, ["backup", "create", "--note", "manual"])
    assert created.exit_code == 0
    registry.lookup("demo", "P002")

    aborted = runner.invoke(cli_app.app, ["backup", "restore"], input="n\n")
    assert aborted.exit_code == 1
    assert registry.store.count("demo") == 2

    restored = runner.invoke(cli_app.app, ["backup", "restore", "--yes"])
    assert restored.exit_code == 0
    assert registry.store.count("demo") == 1

    listing = runner.invoke(cli_app.app, ["backup", "list"])
    filenames = [line.split("\t")[0] for line in listing.output.strip().splitlines()]
    assert len(filenames) == 2

    deleted = runner.invoke(cli_app.app, ["backup", "delete", filenames[0]])
    assert deleted.exit_code == 0
    invalid = runner.invoke(cli_app.app, ["backup", "delete", "../etc/passwd"])
    assert invalid.exit_code == 1
    assert "BackupError" in invalid.output
