"""Thin CLI wrapper for kfx_packager.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from kfx_packager import __version__
from kfx_packager.config import get_settings, print_settings_json

app = typer.Typer(
    name="kfx-package",
    help="KF/x packager - build and collect KF/x + Xen packages for each distribution",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kfx-packager version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data))


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """KF/x packager - build and collect KF/x + Xen packages for each distribution."""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        timeout_display = (
            str(settings.build_timeout) if settings.build_timeout else "(none)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Sources:[/bold]")
        console.print(f"  Source root:         {settings.source_root}")
        console.print(f"  Tracked sources:     {', '.join(settings.tracked_sources)}")
        console.print(f"  Intermediate recipe: {settings.intermediate_recipe}")
        console.print(f"  Final recipe:        {settings.final_recipe}")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Log directory:       {settings.log_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print(f"  Targets file:        {settings.targets_file or '(built-in)'}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Version label:       {settings.version_label}")
        console.print(f"  Engine:              {settings.engine_binary}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Max builds:          {settings.max_concurrent_builds}")
        console.print(f"  Build timeout:       {timeout_display}")


@app.command()
def build(
    ctx: typer.Context,
    target: Annotated[
        str | None,
        typer.Argument(help="Target codename, or 'all' for every known target"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Argument(help="Output directory (default: new kfx-artifacts-XXXXXX)"),
    ] = None,
    version_label: Annotated[
        str | None,
        typer.Option("--version-label", "-l", help="Version stamped on packages"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, max=16, help="Concurrent target builds"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Discard the cached intermediate image"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build packages for one target or for all targets.

    Packages from every target that succeeded are collected into
    OUTPUT_DIR. Exits with code 1 if any target failed.
    """
    from kfx_packager.builds.cache import CacheStoreError
    from kfx_packager.builds.service import package_targets
    from kfx_packager.db import create_all_tables, get_engine, get_session_factory
    from kfx_packager.targets.service import TargetCatalogError, UnknownTargetError

    if target is None:
        console.print(ctx.get_usage(), markup=False)
        console.print("Target can be 'all' or one of the names from 'targets list'.")
        raise typer.Exit(code=1)

    settings = get_settings()
    db_engine = get_engine(settings.db_url)
    create_all_tables(db_engine)
    factory = get_session_factory(db_engine)

    with factory() as session:
        try:
            result = package_targets(
                target,
                output_dir=output_dir,
                settings=settings,
                session=session,
                version_label=version_label,
                force_rebuild=force,
                max_workers=jobs,
            )
        except (TargetCatalogError, UnknownTargetError) as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None
        except CacheStoreError as e:
            console.print(f"[red]Cache error: {e}[/red]")
            raise typer.Exit(code=1) from None
        session.commit()

    orchestration = result.orchestration
    artifacts = result.normalize_report.artifacts if result.normalize_report else []

    if json_output:
        _print_json(
            {
                "run_id": result.run_id,
                "output_dir": str(result.output_dir),
                "status": orchestration.status.value,
                "exit_code": result.exit_code,
                "targets": [
                    {
                        "name": r.target.name,
                        "status": r.status.value,
                        "cache_key": r.cache_key,
                        "cache_hit": r.cache_hit,
                        "error_code": r.error_code,
                        "diagnostics": r.diagnostics or None,
                        "log_path": str(r.log_path) if r.log_path else None,
                    }
                    for r in orchestration.results
                ],
                "artifacts": [
                    {
                        "filename": a.filename,
                        "size_bytes": a.size_bytes,
                        "sha256": a.sha256,
                    }
                    for a in artifacts
                ],
            }
        )
    else:
        console.print()
        console.print(f"[bold]Run {result.run_id}:[/bold] {orchestration.status.value}")
        for r in orchestration.results:
            if r.succeeded:
                hit_marker = " (cached intermediate)" if r.cache_hit else ""
                console.print(f"  [green]✓ {r.target.name}{hit_marker}[/green]")
            else:
                console.print(f"  [red]✗ {r.target.name}[/red] ({r.error_code})")
        if artifacts:
            console.print()
            console.print(f"[bold]Packages in {result.output_dir}:[/bold]")
            for a in artifacts:
                console.print(f"  {a.filename}")
        if orchestration.failed:
            console.print()
            console.print("[bold red]Failed targets:[/bold red]")
            for r in orchestration.failed:
                console.print(f"  [red]{r.target.name}[/red]")
                console.print(r.diagnostics, markup=False, highlight=False)

    if result.exit_code != 0:
        raise typer.Exit(code=1)


targets_app = typer.Typer(help="Inspect distribution targets")
app.add_typer(targets_app, name="targets")


@targets_app.command("list")
def targets_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List the known distribution targets."""
    from kfx_packager.targets.service import TargetCatalogError, get_known_targets

    settings = get_settings()
    try:
        targets = get_known_targets(settings)
    except TargetCatalogError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json([t.model_dump() for t in targets])
        return

    console.print(f"[bold]{len(targets)} target(s):[/bold]")
    for t in targets:
        console.print(f"  [green]{t.name}[/green]  {t.base_image_ref}  ({t.version_label})")


cache_app = typer.Typer(help="Manage the intermediate image cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("show")
def cache_show(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the cached intermediate image, if any."""
    from kfx_packager.builds.cache import FileIntermediateCache

    settings = get_settings()
    entry = FileIntermediateCache(settings.cache_dir).current()

    if json_output:
        if entry is None:
            console.print("null")
            return
        _print_json(
            {
                "key": entry.key,
                "path": str(entry.artifact_path),
                "size_bytes": entry.size_bytes,
                "created_at": entry.created_at.isoformat(),
            }
        )
        return

    if entry is None:
        console.print(f"[yellow]Cache is empty ({settings.cache_dir})[/yellow]")
        return
    console.print("[bold]Cached intermediate image:[/bold]")
    console.print(f"  Key:     {entry.key}")
    console.print(f"  Path:    {entry.artifact_path}")
    console.print(f"  Size:    {entry.size_bytes} bytes")
    console.print(f"  Created: {entry.created_at.isoformat()}")


@cache_app.command("clear")
def cache_clear() -> None:
    """Remove the cached intermediate image."""
    from kfx_packager.builds.cache import CacheStoreError, FileIntermediateCache

    settings = get_settings()
    cache = FileIntermediateCache(settings.cache_dir)
    try:
        with cache, cache.writer_lock():
            removed = cache.evict_all()
    except CacheStoreError as e:
        console.print(f"[red]Cache error: {e}[/red]")
        raise typer.Exit(code=1) from None

    if removed:
        console.print(f"[green]Removed {removed} cache entr(ies)[/green]")
    else:
        console.print("[yellow]Cache was already empty[/yellow]")


builds_app = typer.Typer(help="Inspect build history")
app.add_typer(builds_app, name="builds")


@builds_app.command("list")
def builds_list(
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="Filter by target codename"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option("--status", "-s", help="Filter by status (succeeded/failed)"),
    ] = None,
    run_id: Annotated[
        str | None,
        typer.Option("--run", "-r", help="Filter by run ID"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from kfx_packager.builds.service import list_builds
    from kfx_packager.db import create_all_tables, get_engine, get_session_factory
    from kfx_packager.types import BuildStatus

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: succeeded, failed")
            raise typer.Exit(code=1) from None

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        records = list_builds(
            session,
            target_name=target,
            status=status_filter,
            run_id=run_id,
            limit=limit,
        )

        if not records:
            if json_output:
                console.print("[]")
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            _print_json(
                [
                    {
                        "id": r.id,
                        "run_id": r.run_id,
                        "target": r.target_name,
                        "status": r.status,
                        "version_label": r.version_label,
                        "cache_hit": r.is_cache_hit,
                        "error_type": r.error_type,
                        "output_files": r.output_files or [],
                        "started_at": r.started_at.isoformat() if r.started_at else None,
                        "finished_at": (
                            r.finished_at.isoformat() if r.finished_at else None
                        ),
                    }
                    for r in records
                ]
            )
            return

        console.print(f"[bold]Found {len(records)} build(s):[/bold]")
        for r in records:
            color = "green" if r.is_succeeded() else "red"
            console.print(
                f"  [{color}]{r.run_id} {r.target_name}: {r.status}[/{color}]"
            )
            if r.error_type:
                console.print(f"    Error: {r.error_type}")


@app.command()
def normalize(
    directory: Annotated[Path, typer.Argument(help="Raw output directory")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Decompress and flatten packages in an existing output directory."""
    from kfx_packager.builds.artifacts import ArtifactNormalizer

    try:
        report = ArtifactNormalizer().normalize(directory)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(
            {
                "directory": str(report.final_root),
                "decompressed": [p.name for p in report.decompressed],
                "collisions": [str(p) for p in report.collisions],
                "diagnostics": report.diagnostics,
                "artifacts": [
                    {"filename": a.filename, "size_bytes": a.size_bytes, "sha256": a.sha256}
                    for a in report.artifacts
                ],
            }
        )
    else:
        console.print(f"[bold]{len(report.artifacts)} package(s) in {directory}:[/bold]")
        for a in report.artifacts:
            console.print(f"  {a.filename}")
        for p in report.collisions:
            console.print(f"[yellow]Name collision, left in place: {p}[/yellow]")
        for message in report.diagnostics:
            console.print(f"[red]{message}[/red]")

    if report.diagnostics:
        raise typer.Exit(code=1)


@app.command()
def deb(
    staged_dir: Annotated[Path, typer.Argument(help="Staged filesystem tree")],
    output: Annotated[Path, typer.Argument(help="Path of the .deb to write")],
    name: Annotated[str, typer.Option("--name", help="Package name")],
    version: Annotated[str, typer.Option("--version", help="Package version")],
    source: Annotated[
        str | None,
        typer.Option("--source", help="Source package name (default: --name)"),
    ] = None,
    arch: Annotated[str, typer.Option("--arch", help="Architecture")] = "amd64",
    depends: Annotated[
        list[str] | None,
        typer.Option("--depends", "-d", help="Dependency (can be repeated)"),
    ] = None,
    conflicts: Annotated[
        list[str] | None,
        typer.Option("--conflicts", "-c", help="Conflicting package (can be repeated)"),
    ] = None,
    description: Annotated[
        str, typer.Option("--description", help="Package description")
    ] = "",
    postinst: Annotated[
        Path | None,
        typer.Option("--postinst", help="postinst script to install"),
    ] = None,
    postrm: Annotated[
        Path | None,
        typer.Option("--postrm", help="postrm script to install"),
    ] = None,
) -> None:
    """Package a staged tree as a Debian archive."""
    from pydantic import ValidationError

    from kfx_packager.packaging.deb import DebControl, PackagingError, build_deb

    try:
        control = DebControl(
            package=name,
            source=source or name,
            version=version,
            architecture=arch,
            depends=depends or [],
            conflicts=conflicts or [],
            description=description,
        )
    except ValidationError as e:
        console.print("[red]Invalid package metadata:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None

    try:
        path = build_deb(
            staged_dir,
            control,
            output,
            postinst=postinst.read_bytes() if postinst else None,
            postrm=postrm.read_bytes() if postrm else None,
        )
    except (PackagingError, OSError) as e:
        console.print(f"[red]Packaging failed: {e}[/red]")
        raise typer.Exit(code=1) from None

    console.print(f"[green]Created {path}[/green]")


if __name__ == "__main__":
    app()
