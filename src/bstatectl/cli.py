"""Typer-powered command line interface for ``bstatectl``.

Each command loads the layered configuration, records its run in the
structured operations log and maps failures onto :class:`ExitCode` values so
automation can tell validation problems from store outages.
"""
from __future__ import annotations

import json
import logging
import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .actions import StoreAction
from .cleanup import CleanupError, CleanupPass, CleanupStatus, load_instance_list
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .inventory import ArchiveInventory
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .models import InstanceData
from .rebuild import BackupRebuilder, RebuildError
from .reconcile import ReconcileError, ShardCollisionError, ShardReconciler
from .repair import NullValueRepairer, RepairError
from .snapshot import (
    Snapshot,
    SnapshotError,
    capture_snapshot,
    latest_snapshot,
    load_snapshot,
    write_snapshot,
)
from .store import RealmStateStore, StateStore, StateStoreError, state_shards
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to bstatectl's YAML config file.",
)
PUBLIC_KEY_OPTION = typer.Option(
    None,
    "--public-key",
    help="API public key (overrides api.public_key).",
)
PRIVATE_KEY_OPTION = typer.Option(
    None,
    "--private-key",
    help="API private key (overrides api.private_key).",
)
ORG_ID_OPTION = typer.Option(
    None,
    "--org-id",
    help="Organisation id written into rebuilt plans.",
)
PROJECT_ID_OPTION = typer.Option(
    None,
    "--project-id",
    help="Project holding the state apps.",
)
VERBOSE_OPTION = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Show informational progress messages.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Report the changes without touching the store.",
)
TARGET_OPTION = typer.Option(
    None,
    "--target",
    help="App id to merge into (defaults to the smallest app id).",
)
INSTANCE_LIST_OPTION = typer.Option(
    None,
    "--instance-list",
    dir_okay=False,
    help="JSON array of live instance ids; values not listed are removed.",
)
WORKERS_OPTION = typer.Option(
    None,
    "--workers",
    min=1,
    help="Number of concurrent workers (defaults to the CPU count).",
)
SNAPSHOT_OPTION = typer.Option(
    None,
    "--snapshot",
    dir_okay=False,
    help="Backup snapshot to rebuild from (defaults to the newest one).",
)
ARCHIVE_DIR_OPTION = typer.Option(
    None,
    "--archive-dir",
    file_okay=False,
    help="Directory holding service_instances/ and service_plans/ records.",
)
EXCLUDE_SHARD_OPTION = typer.Option(
    None,
    "--exclude-shard",
    help="App id in the snapshot to ignore (repeatable).",
)
CANARY_OPTION = typer.Option(
    False,
    "--canary",
    help="Stop after the first repaired value.",
)
OUT_DIR_OPTION = typer.Option(
    None,
    "--out-dir",
    file_okay=False,
    help="Override the backup root directory for this invocation.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Service broker state maintenance CLI.

        Merges duplicate state apps, converts legacy plan records, removes
        stale values and rebuilds null values from archived records.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


def build_store(config: AppConfig) -> StateStore:
    """Return the production state store for *config*."""
    return RealmStateStore(
        project_id=config.project_id or "",
        public_key=config.api.public_key or "",
        private_key=config.api.private_key or "",
        base_url=config.api.base_url,
        timeout=config.api.timeout,
        retries=config.api.retries,
    )


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    store_factory: Callable[[AppConfig], StateStore]


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    overrides: Mapping[str, object] | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine(),
        store_factory=build_store,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the bstatectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    public_key: str | None = PUBLIC_KEY_OPTION,
    private_key: str | None = PRIVATE_KEY_OPTION,
    org_id: str | None = ORG_ID_OPTION,
    project_id: str | None = PROJECT_ID_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"bstatectl {__version__}")
        raise typer.Exit(code=0)

    configure_console_logging(logging.INFO if verbose else logging.WARNING)
    overrides: dict[str, object] = {
        "org_id": org_id,
        "project_id": project_id,
        "api": {"public_key": public_key, "private_key": private_key},
    }
    _ensure_runtime(ctx, config_file, overrides)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _require_store(op: OperationScope, runtime: RuntimeContext) -> StateStore:
    try:
        runtime.config.require("project_id", "api.public_key", "api.private_key")
    except ConfigError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    return runtime.store_factory(runtime.config)


def _render_actions(actions: Sequence[StoreAction], *, title: str) -> None:
    if not actions:
        console.print("No changes.")
        return
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Action")
    table.add_column("App")
    table.add_column("Value")
    for index, action in enumerate(actions, start=1):
        table.add_row(str(index), action.kind.value, action.shard_id, action.value_name or "-")
    console.print(table)


def _resolve_snapshot(
    op: OperationScope,
    runtime: RuntimeContext,
    snapshot: Path | None,
) -> tuple[Path, Snapshot]:
    path = snapshot or runtime.config.archive.snapshot
    if path is None:
        path = latest_snapshot(runtime.config.backups.root)
    if path is None:
        _command_error(
            op,
            f"No backup snapshot found under {runtime.config.backups.root}; pass --snapshot.",
            rc=ExitCode.ENVIRONMENT,
        )
    try:
        data = load_snapshot(path)
    except SnapshotError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
    op.add_step("snapshot.load", detail={"path": path, "apps": len(data)})
    return path, data


def _rebuild_instances(
    op: OperationScope,
    runtime: RuntimeContext,
    *,
    snapshot: Path | None,
    archive_dir: Path | None,
    exclude_shards: Sequence[str] | None,
    render: bool,
) -> dict[str, InstanceData]:
    try:
        runtime.config.require("org_id")
    except ConfigError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    _, data = _resolve_snapshot(op, runtime, snapshot)
    excluded = frozenset(runtime.config.archive.exclude_shards) | frozenset(exclude_shards or ())
    rebuilder = BackupRebuilder(
        inventory=ArchiveInventory(archive_dir or runtime.config.archive.root),
        org_id=runtime.config.org_id or "",
        templates=runtime.templates,
        exclude_shards=excluded,
        render=render,
    )
    try:
        instances, summary = rebuilder.rebuild(data)
    except RebuildError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
    op.add_step("rebuild", detail=summary.to_dict())
    if summary.missing:
        console.print(
            f"[yellow]{len(summary.missing)} instance(s) no longer exist upstream and were "
            "skipped.[/yellow]"
        )
    return instances


@app.command()
def migrate(
    ctx: typer.Context,
    dry_run: bool = DRY_RUN_OPTION,
    target: str | None = TARGET_OPTION,
) -> None:
    """Merge every duplicate state app into a single one."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "migrate",
        args={"dry_run": dry_run, "target": target},
        target={"kind": "project", "project_id": config.project_id, "app": config.shard_name},
    ) as op:
        store = _require_store(op, runtime)
        reconciler = ShardReconciler(
            store=store,
            project_id=config.project_id or "",
            backup_dir=config.backups.root,
            shard_name=config.shard_name,
            dry_run=dry_run,
        )
        try:
            report = reconciler.run(target_id=target)
        except ShardCollisionError as exc:
            _command_error(
                op,
                str(exc),
                rc=ExitCode.CONFLICT,
                errors=[item.name for item in exc.collisions],
            )
        except SnapshotError as exc:
            _command_error(op, f"Backup failed: {exc}", rc=ExitCode.ENVIRONMENT)
        except (ReconcileError, StateStoreError) as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)

        context = report.to_dict()
        op.add_step("migrate.merge", detail={"actions": len(report.actions)})
        target_shard = report.target
        if target_shard is None:
            console.print(f"Found {len(report.shards)} state app(s); nothing to migrate.")
            op.success("Nothing to migrate.", changed=0, context=context)
            return

        _render_actions(report.actions, title=f"Merge into {target_shard.id}")
        if dry_run:
            _dry_run_complete(
                op,
                f"{len(report.actions)} change(s) planned for {len(report.shards)} app(s).",
                context=context,
            )
            return

        backups = [str(report.snapshot_path)] if report.snapshot_path else []
        console.print(
            f"[green]Merged {len(report.shards) - 1} app(s) into {target_shard.id}.[/green] "
            f"Backup: {report.snapshot_path}"
        )
        op.success(
            "State apps merged.",
            changed=len(report.actions),
            backups=backups,
            context=context,
        )


@app.command()
def cleanup(
    ctx: typer.Context,
    dry_run: bool = DRY_RUN_OPTION,
    instance_list: Path | None = INSTANCE_LIST_OPTION,
    workers: int | None = WORKERS_OPTION,
) -> None:
    """Convert legacy plan records and remove values of deleted instances."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "cleanup",
        args={"dry_run": dry_run, "instance_list": instance_list, "workers": workers},
        target={"kind": "app", "project_id": config.project_id, "app": config.shard_name},
    ) as op:
        retain: frozenset[str] | None = None
        if instance_list is not None:
            try:
                retain = load_instance_list(instance_list)
            except CleanupError as exc:
                _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
            op.add_step(
                "cleanup.instance-list",
                detail={"path": instance_list, "count": len(retain)},
            )
            if not retain:
                console.print(
                    "[yellow]Instance list is empty; stale value removal disabled.[/yellow]"
                )

        store = _require_store(op, runtime)
        cleaner = CleanupPass(
            store=store,
            shard_name=config.shard_name,
            retain=retain,
            workers=workers or config.workers,
            dry_run=dry_run,
        )
        try:
            report = cleaner.run()
        except CleanupError as exc:
            _command_error(op, str(exc), rc=ExitCode.CONFLICT)
        except StateStoreError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)

        context = report.to_dict()
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Status")
        table.add_column("Values", justify="right")
        for status, count in report.totals.items():
            table.add_row(status, str(count))
        console.print(table)

        nulls = report.totals[CleanupStatus.NULL_VALUE.value]
        if nulls:
            console.print(
                f"[yellow]{nulls} null value(s) found; run 'bstatectl repair' to rebuild them."
                "[/yellow]"
            )

        if report.failures:
            for item in report.failures:
                console.print(f"[red]{item.name}: {item.status.value} {item.detail}[/red]")
            message = f"{len(report.failures)} value(s) could not be processed."
            console.print(f"[red]{message}[/red]")
            op.warning(
                message,
                errors=[f"{item.name}: {item.detail}" for item in report.failures],
                changed=0 if dry_run else len(report.actions),
                context=context,
            )
            raise typer.Exit(code=int(ExitCode.PROVIDER))

        if dry_run:
            _dry_run_complete(op, f"{len(report.actions)} change(s) planned.", context=context)
            return
        console.print(f"[green]Cleanup finished with {len(report.actions)} change(s).[/green]")
        op.success("Cleanup finished.", changed=len(report.actions), context=context)


@app.command()
def rebuild(
    ctx: typer.Context,
    snapshot: Path | None = SNAPSHOT_OPTION,
    archive_dir: Path | None = ARCHIVE_DIR_OPTION,
    exclude_shard: list[str] | None = EXCLUDE_SHARD_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Rebuild instance plans from a snapshot and the archived records."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rebuild",
        args={
            "snapshot": snapshot,
            "archive_dir": archive_dir,
            "exclude_shard": list(exclude_shard or []),
        },
        target={"kind": "archive", "org_id": runtime.config.org_id},
    ) as op:
        instances = _rebuild_instances(
            op,
            runtime,
            snapshot=snapshot,
            archive_dir=archive_dir,
            exclude_shards=exclude_shard,
            render=True,
        )
        payload = {
            instance_id: {
                "name": data.name,
                "dashboard_url": data.dashboard_url,
                "plan": data.plan.to_wire() if data.plan is not None else None,
            }
            for instance_id, data in sorted(instances.items())
        }
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Instance")
            table.add_column("Name")
            table.add_column("Dashboard")
            for instance_id, entry in payload.items():
                table.add_row(instance_id, str(entry["name"]), str(entry["dashboard_url"]))
            console.print(table)
        op.success(f"Rebuilt {len(instances)} instance(s).", changed=0)


@app.command()
def repair(
    ctx: typer.Context,
    dry_run: bool = DRY_RUN_OPTION,
    canary: bool = CANARY_OPTION,
    snapshot: Path | None = SNAPSHOT_OPTION,
    archive_dir: Path | None = ARCHIVE_DIR_OPTION,
    exclude_shard: list[str] | None = EXCLUDE_SHARD_OPTION,
) -> None:
    """Replace null values with records rebuilt from archives."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "repair",
        args={
            "dry_run": dry_run,
            "canary": canary,
            "snapshot": snapshot,
            "archive_dir": archive_dir,
            "exclude_shard": list(exclude_shard or []),
        },
        target={"kind": "project", "project_id": config.project_id, "app": config.shard_name},
    ) as op:
        instances = _rebuild_instances(
            op,
            runtime,
            snapshot=snapshot,
            archive_dir=archive_dir,
            exclude_shards=exclude_shard,
            render=False,
        )
        store = _require_store(op, runtime)
        repairer = NullValueRepairer(
            store=store,
            instance_data=instances,
            shard_name=config.shard_name,
            templates=runtime.templates,
            dry_run=dry_run,
            canary=canary,
        )
        try:
            report = repairer.run()
        except (RepairError, StateStoreError) as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)

        context = report.to_dict()
        _render_actions(report.actions, title="Repairs")
        console.print(
            f"Repaired {len(report.repaired)} value(s); {report.not_null} value(s) were not null."
        )
        if report.stopped_early:
            console.print("[yellow]Canary mode: stopped after the first repair.[/yellow]")

        if report.unresolved:
            warnings = [f"{name}: {reason}" for name, reason in sorted(report.unresolved.items())]
            for line in warnings:
                console.print(f"[yellow]Unresolved {line}[/yellow]")
            op.warning(
                f"{len(report.unresolved)} null value(s) could not be rebuilt.",
                warnings=warnings,
                changed=0 if dry_run else len(report.actions),
                context=context,
            )
            return

        if dry_run:
            _dry_run_complete(op, f"{len(report.actions)} change(s) planned.", context=context)
            return
        op.success("Null values repaired.", changed=len(report.actions), context=context)


@app.command("snapshot")
def snapshot_command(
    ctx: typer.Context,
    out_dir: Path | None = OUT_DIR_OPTION,
) -> None:
    """Write a backup of every state app's values."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    destination = out_dir or config.backups.root
    with runtime.logger.operation(
        "snapshot",
        args={"out_dir": out_dir},
        target={"kind": "project", "project_id": config.project_id, "app": config.shard_name},
    ) as op:
        store = _require_store(op, runtime)
        try:
            shards = state_shards(store, config.shard_name)
            data = capture_snapshot(store, shards)
        except StateStoreError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        except SnapshotError as exc:
            _command_error(op, str(exc), rc=ExitCode.CONFLICT)
        try:
            path = write_snapshot(destination, data)
        except SnapshotError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        count = sum(len(values) for values in data.values())
        console.print(f"[green]Saved {count} value(s) from {len(data)} app(s) to {path}.[/green]")
        op.success(
            "Snapshot written.",
            changed=0,
            backups=[str(path)],
            context={"apps": len(data), "values": count},
        )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


__all__ = ["RuntimeContext", "app", "build_store"]
