"""Thin CLI wrapper for proxy_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from proxy_imagegen import __version__
from proxy_imagegen.config import get_settings, print_settings_json
from proxy_imagegen.errors import DefinitionError

app = typer.Typer(
    name="proxy-imagegen",
    help="Proxy Image Generator - provision container images for the proxy binary",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"proxy-imagegen version {__version__}")
        raise typer.Exit()


def _configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


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
) -> None:
    """Proxy Image Generator - provision container images for the proxy binary."""
    _configure_logging(get_settings().log_level)


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
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Engine:[/bold]")
        console.print(f"  Container engine:    {settings.engine}")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Log directory:       {settings.log_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Step timeout:        {settings.step_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")


definition_app = typer.Typer(help="Validate and inspect image definitions")
app.add_typer(definition_app, name="definition")


@definition_app.command("validate")
def definition_validate(
    path: Annotated[str, typer.Argument(help="Path to definition file to validate")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Validate a definition file, including its privilege and base policies."""
    from proxy_imagegen.definitions.io import validate_definition_file

    file_path = Path(path)
    if not file_path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(code=1)

    result = validate_definition_file(file_path)

    if json_output:
        console.print_json(result.model_dump_json())
    elif result.valid:
        console.print(f"[green]✓ Valid definition: {path}[/green]")
    else:
        console.print("[red]Validation failed:[/red]")
        for error in result.errors:
            console.print(f"  {error}", markup=False)

    if not result.valid:
        raise typer.Exit(code=1)


@definition_app.command("show")
def definition_show(
    path: Annotated[str, typer.Argument(help="Path to definition file")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a validated definition with defaults filled in."""
    from pydantic import ValidationError

    from proxy_imagegen.definitions.io import (
        definition_to_dict,
        export_definition_to_yaml,
        load_definition,
    )

    try:
        definition = load_definition(Path(path))
    except ValidationError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None
    except (OSError, ValueError, DefinitionError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print_json(data=definition_to_dict(definition))
    else:
        console.print(export_definition_to_yaml(definition), markup=False)


def _build_to_dict(build: Any) -> dict[str, Any]:
    """Convert a BuildRecord to a JSON-serializable dict."""
    return {
        "id": build.id,
        "image_id": build.image_id,
        "status": build.status,
        "state": build.state,
        "fingerprint": build.fingerprint,
        "final_image": build.final_image,
        "tag": build.tag,
        "failed_step": build.failed_step,
        "requested_at": build.requested_at.isoformat() if build.requested_at else None,
        "started_at": build.started_at.isoformat() if build.started_at else None,
        "finished_at": build.finished_at.isoformat() if build.finished_at else None,
        "log_path": build.log_path,
        "error_type": build.error_type,
        "error_message": build.error_message,
    }


def _layer_to_dict(layer: Any) -> dict[str, Any]:
    """Convert a LayerRecord to a JSON-serializable dict."""
    return {
        "position": layer.position,
        "step": layer.step,
        "image_id": layer.image_id,
        "parent_id": layer.parent_id,
        "created_at": layer.created_at.isoformat(),
        "details": layer.details,
    }


builds_app = typer.Typer(help="Build images")
app.add_typer(builds_app, name="build")


@builds_app.command("run")
def build_run(
    path: Annotated[str, typer.Argument(help="Path to definition file")],
    context: Annotated[
        Path,
        typer.Option(
            "--context",
            "-c",
            help="Build context directory holding the pre-built binary",
        ),
    ] = Path("."),
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Run the provisioning pipeline for a definition.

    The image is tagged only when every step succeeds. Any failure is
    recorded on the build record and exits with code 1.
    """
    from pydantic import ValidationError

    from proxy_imagegen.db import create_all_tables, get_engine, get_session_factory
    from proxy_imagegen.definitions.io import load_definition
    from proxy_imagegen.pipeline.service import BuildServiceError, build_image

    try:
        definition = load_definition(Path(path))
    except ValidationError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None
    except (OSError, ValueError, DefinitionError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        if not json_output:
            console.print(f"[blue]Building {definition.image_id}...[/blue]")

        try:
            build, result = build_image(
                session,
                definition,
                context.resolve(),
                settings=settings,
            )
        except BuildServiceError as e:
            console.print(f"[red]Error ({e.code}): {e}[/red]")
            raise typer.Exit(code=1) from None
        except TimeoutError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(code=1) from None
        finally:
            session.commit()

        if json_output:
            output = _build_to_dict(build)
            output["layers"] = [_layer_to_dict(layer) for layer in build.layers]
            console.print_json(data=output)
        elif result.success:
            console.print(f"[green]✓ Build #{build.id} succeeded[/green]")
            console.print(f"  Image: {result.image_id}")
            console.print(f"  Tag: {result.tag}")
            console.print(f"  Fingerprint: {result.fingerprint}")
            if result.identity is not None:
                console.print(f"  User: {result.identity.user}")
        else:
            console.print(
                f"[red]✗ Build #{build.id} failed at {result.failed_step}[/red]"
            )
            if result.error is not None:
                console.print(
                    f"  Error ({result.error.code}): {result.error}", markup=False
                )
            console.print(f"  Layers committed: {len(result.layers)}")
            console.print(f"  Log: {build.log_path}")

        if not result.success:
            raise typer.Exit(code=1)


@builds_app.command("list")
def builds_list(
    image_id: Annotated[
        str | None,
        typer.Option("--image", "-i", help="Filter by definition image ID"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from proxy_imagegen.db import (
        create_all_tables,
        get_engine,
        get_session,
        get_session_factory,
    )
    from proxy_imagegen.pipeline.service import list_builds
    from proxy_imagegen.types import BuildStatus

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with get_session(factory) as session:
        builds = list_builds(
            session, image_id=image_id, status=status_filter, limit=limit
        )

        if not builds:
            if json_output:
                console.print("[]")
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            console.print_json(data=[_build_to_dict(b) for b in builds])
        else:
            console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
            console.print()
            for b in builds:
                status_color = {
                    "succeeded": "green",
                    "failed": "red",
                    "running": "blue",
                    "pending": "yellow",
                }.get(b.status, "white")
                console.print(f"  [{status_color}]Build #{b.id}[/{status_color}]")
                console.print(f"    Definition: {b.image_id}")
                console.print(f"    Status: {b.status} ({b.state})")
                if b.tag:
                    console.print(f"    Tag: {b.tag}")
                if b.failed_step:
                    console.print(f"    Failed step: {b.failed_step}")
                if b.error_message:
                    console.print(f"    Error: {b.error_message}", markup=False)
                console.print()


@builds_app.command("show")
def builds_show(
    build_id: Annotated[int, typer.Argument(help="Build ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a build record and the layers it committed."""
    from proxy_imagegen.db import (
        create_all_tables,
        get_engine,
        get_session,
        get_session_factory,
    )
    from proxy_imagegen.pipeline.service import (
        BuildNotFoundError,
        get_build,
        get_build_layers,
    )

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with get_session(factory) as session:
        try:
            build = get_build(session, build_id)
            layers = get_build_layers(session, build_id)
        except BuildNotFoundError:
            console.print(f"[red]Build not found: {build_id}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            output = _build_to_dict(build)
            output["layers"] = [_layer_to_dict(layer) for layer in layers]
            console.print_json(data=output)
            return

        console.print(f"[bold]Build #{build.id}[/bold]")
        console.print(f"  Definition: {build.image_id}")
        console.print(f"  Status: {build.status} ({build.state})")
        console.print(f"  Fingerprint: {build.fingerprint or 'N/A'}")
        console.print(f"  Final image: {build.final_image or 'N/A'}")
        console.print(f"  Tag: {build.tag or 'N/A'}")
        console.print(f"  Log: {build.log_path or 'N/A'}")
        if build.error_message:
            console.print(
                f"  Error ({build.error_type}): {build.error_message}", markup=False
            )
        console.print()
        console.print(f"[bold]Layers ({len(layers)}):[/bold]")
        for layer in layers:
            console.print(f"  {layer.position}. {layer.step}: {layer.image_id}")


image_app = typer.Typer(help="Inspect produced images")
app.add_typer(image_app, name="image")


@image_app.command("verify")
def image_verify(
    image: Annotated[str, typer.Argument(help="Image reference or id to verify")],
    definition_path: Annotated[
        str,
        typer.Option("--definition", "-d", help="Definition the image was built from"),
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Check an image's entrypoint, default user and labels."""
    from pydantic import ValidationError

    from proxy_imagegen.definitions.io import load_definition
    from proxy_imagegen.engine.runner import ContainerEngine
    from proxy_imagegen.errors import PipelineError
    from proxy_imagegen.pipeline.verify import ERROR, verify_image

    try:
        definition = load_definition(Path(definition_path))
    except ValidationError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None
    except (OSError, ValueError, DefinitionError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    settings = get_settings()
    engine = ContainerEngine(binary=settings.engine, timeout=settings.step_timeout)

    try:
        report = verify_image(engine, image, definition)
    except PipelineError as e:
        console.print(f"[red]Error ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print_json(data=report.to_dict())
    else:
        if report.ok:
            console.print(f"[green]✓ {image} matches {definition.image_id}[/green]")
        else:
            console.print(f"[red]✗ {image} does not match {definition.image_id}[/red]")
        for finding in report.findings:
            color = "red" if finding.level == ERROR else "yellow"
            console.print(f"  [{color}]{finding.level}[/{color}] {finding.code}")
            console.print(f"      {finding.message}", markup=False)

    if not report.ok:
        raise typer.Exit(code=1)


base_app = typer.Typer(help="Manage base image pins")
app.add_typer(base_app, name="base")


@base_app.command("pin")
def base_pin(
    path: Annotated[str, typer.Argument(help="Path to definition file")],
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Resolve the digest without rewriting"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Pin a definition's base image to the digest the registry serves now.

    This is the explicit update step for moving to a newer base image.
    """
    from proxy_imagegen.definitions.io import load_data, update_base_image
    from proxy_imagegen.engine.reference import ImageReferenceError, resolve_digest
    from proxy_imagegen.engine.runner import ContainerEngine
    from proxy_imagegen.errors import PipelineError

    file_path = Path(path)
    try:
        data = load_data(file_path)
    except (OSError, ValueError, DefinitionError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    current = data.get("base_image")
    if not isinstance(current, str) or not current:
        console.print("[red]Definition has no base_image[/red]")
        raise typer.Exit(code=1)

    settings = get_settings()
    engine = ContainerEngine(binary=settings.engine, timeout=settings.step_timeout)

    try:
        pinned = resolve_digest(engine, current)
    except (ImageReferenceError, PipelineError) as e:
        console.print(f"[red]Error ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    changed = pinned != current
    if changed and not dry_run:
        update_base_image(file_path, pinned)

    if json_output:
        console.print_json(
            data={
                "path": str(file_path),
                "previous": current,
                "pinned": pinned,
                "changed": changed,
                "dry_run": dry_run,
            }
        )
    elif not changed:
        console.print(f"[green]Already pinned: {pinned}[/green]")
    else:
        prefix = "[DRY RUN] Would pin" if dry_run else "Pinned"
        console.print(f"{prefix} base image:")
        console.print(f"  {current} -> {pinned}")


if __name__ == "__main__":
    app()
