"""Typer application entrypoint."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, NoReturn, Optional

import typer
from rich import print as rprint
from rich.table import Table

from honest_broker.errors import HonestBrokerError
from honest_broker.registry import BrokerRegistry
from honest_broker.settings import build_backup_manager, build_registry
from logging_config import configure_logging


configure_logging()


app = typer.Typer(help="Honest broker de-identification CLI")
brokers_app = typer.Typer(help="Inspect configured brokers")
backup_app = typer.Typer(help="Manage crosswalk backups")
cache_app = typer.Typer(help="Manage lookup caches")

app.add_typer(brokers_app, name="brokers")
app.add_typer(backup_app, name="backup")
app.add_typer(cache_app, name="cache")


def _fail(exc: HonestBrokerError) -> NoReturn:
    typer.echo(f"{exc.kind}: {exc}", err=True)
    raise typer.Exit(code=1)


@contextmanager
def _registry() -> Iterator[BrokerRegistry]:
    try:
        registry = build_registry()
    except HonestBrokerError as exc:
        _fail(exc)
    try:
        yield registry
    except HonestBrokerError as exc:
        _fail(exc)
    finally:
        registry.close()


@brokers_app.command("list")
def brokers_list() -> None:
    with _registry() as registry:
        summaries = registry.list_brokers()
    if not summaries:
        typer.echo("No brokers configured.")
        return
    table = Table(title="Honest brokers")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Scheme")
    table.add_column("Enabled")
    table.add_column("Mappings", justify="right")
    for summary in summaries:
        table.add_row(
            summary.name,
            summary.broker_type,
            summary.naming_scheme,
            "yes" if summary.enabled else "no",
            str(summary.mapping_count),
        )
    rprint(table)


@brokers_app.command("show")
def brokers_show(name: str = typer.Argument(..., help="Broker name")) -> None:
    with _registry() as registry:
        config = registry.get_broker_config(name).public_dict()
        summary = registry.get_broker(name)
    rprint(config)
    typer.echo(f"Mappings: {summary.mapping_count}")


@brokers_app.command("test")
def brokers_test(name: str = typer.Argument(..., help="Broker name")) -> None:
    with _registry() as registry:
        result = registry.test_connection(name)
    if not result.success:
        typer.echo(f"Connection test failed ({result.error}): {result.message}", err=True)
        raise typer.Exit(code=1)
    typer.echo(result.message)


@app.command("lookup")
def lookup(
    broker: str = typer.Argument(..., help="Broker name"),
    id_in: str = typer.Argument(..., help="Original identifier"),
    id_type: str = typer.Option("patient_id", "--id-type", help="Identifier type"),
) -> None:
    with _registry() as registry:
        id_out = registry.lookup(broker, id_in, id_type)
    typer.echo(id_out)


@app.command("reverse")
def reverse(
    broker: str = typer.Argument(..., help="Broker name"),
    id_out: str = typer.Argument(..., help="Surrogate value"),
    id_type: Optional[str] = typer.Option(None, "--id-type", help="Restrict to one identifier type"),
) -> None:
    with _registry() as registry:
        result = registry.reverse_lookup(broker, id_out, id_type)
    if result is None:
        typer.echo("No mapping found.")
        raise typer.Exit(code=1)
    typer.echo(f"{result.id_in}\t{result.id_type or ''}\t{result.source}")


@app.command("date-shift")
def date_shift(
    broker: str = typer.Argument(..., help="Broker name"),
    patient_key: str = typer.Argument(..., help="Patient key (usually the original patient ID)"),
    value: Optional[str] = typer.Option(None, "--value", help="Date to shift"),
) -> None:
    with _registry() as registry:
        days = registry.get_date_shift(broker, patient_key)
        shifted = registry.shift_date(broker, patient_key, value) if value else None
    typer.echo(f"Offset: {days} day(s)")
    if shifted is not None:
        typer.echo(f"Shifted: {shifted}")


@app.command("export")
def export(
    broker: Optional[str] = typer.Option(None, "--broker", help="Export one broker; default exports all"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="CSV file; default prints to stdout"),
) -> None:
    with _registry() as registry:
        lines = registry.export_crosswalk(broker)
        if output is None:
            for line in lines:
                typer.echo(line, nl=False)
            return
        output.parent.mkdir(parents=True, exist_ok=True)
        with output.open("w", newline="") as handle:
            for line in lines:
                handle.write(line)
    typer.echo(f"Crosswalk exported to {output}")


@app.command("stats")
def stats() -> None:
    with _registry() as registry:
        data = registry.crosswalk_stats()
    table = Table(title=f"Crosswalk ({data['total_mappings']} mappings)")
    table.add_column("Broker")
    table.add_column("Id type")
    table.add_column("Count", justify="right")
    for name, entry in data["brokers"].items():
        for id_type, count in sorted(entry["by_type"].items()):
            table.add_row(name, id_type, str(count))
    rprint(table)


@cache_app.command("clear")
def cache_clear(broker: Optional[str] = typer.Option(None, "--broker", help="Only this broker")) -> None:
    with _registry() as registry:
        cleared = registry.clear_cache(broker)
    typer.echo(f"Cleared {cleared} cache(s).")


@backup_app.command("create")
def backup_create(note: Optional[str] = typer.Option(None, help="Note stored with the backup")) -> None:
    with _registry() as registry:
        info = build_backup_manager(registry).create_backup(note=note)
    typer.echo(f"Backup created at {info.path}")


@backup_app.command("list")
def backup_list() -> None:
    with _registry() as registry:
        backups = build_backup_manager(registry).list_backups()
    if not backups:
        typer.echo("No backups found.")
        return
    for info in backups:
        typer.echo(f"{info.filename}\t{info.created_at.isoformat()}\t{info.size_bytes}\t{info.note or ''}")


@backup_app.command("restore")
def backup_restore(
    filename: Optional[str] = typer.Argument(None, help="Backup file name; defaults to the latest"),
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt"),
) -> None:
    with _registry() as registry:
        manager = build_backup_manager(registry)
        if filename is None:
            backups = manager.list_backups()
            if not backups:
                typer.echo("No backups found.")
                raise typer.Exit(code=1)
            filename = backups[0].filename
        if not yes:
            typer.confirm(f"Replace the crosswalk with {filename}?", abort=True)
        manager.restore(filename)
    typer.echo(f"Restore completed from {filename}")


@backup_app.command("delete")
def backup_delete(filename: str = typer.Argument(..., help="Backup file name")) -> None:
    with _registry() as registry:
        build_backup_manager(registry).delete_backup(filename)
    typer.echo(f"Deleted {filename}")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind address"),
    port: int = typer.Option(8000, help="Port"),
) -> None:
    import uvicorn

    from api.server import create_app

    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    app()
