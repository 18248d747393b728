"""CLI runner for the reel compiler.

Usage:
    python -m reelcompiler compile timeline.json a.jpg b.jpg -o reel.mp4
    python -m reelcompiler plan timeline.json a.jpg b.jpg
    python -m reelcompiler genres
"""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

console = Console()


def _setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quiet down httpx unless debugging
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def _load_settings(ctx: click.Context):
    from reelcompiler.config import load_settings

    try:
        return load_settings(ctx.obj["config"])
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        sys.exit(1)


@click.group()
@click.option("--config", "-c", default=None, help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """reelcompiler: timeline schema and stills to a vertical MP4."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    _setup_logging(verbose)


# ------------------------------------------------------------------
# compile
# ------------------------------------------------------------------

@cli.command("compile")
@click.argument("schema_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("media", nargs=-1, type=click.Path(dir_okay=False))
@click.option("--output", "-o", default="reel.mp4", help="Where to write the MP4")
@click.option("--profile", type=click.Choice(["reels", "pro"]), default=None, help="Codec profile")
@click.option("--overlay-timing", type=click.Choice(["visual", "text"]), default=None,
              help="Caption windows from image segments or from the captions themselves")
@click.pass_context
def cmd_compile(
    ctx: click.Context,
    schema_path: str,
    media: tuple[str, ...],
    output: str,
    profile: str | None,
    overlay_timing: str | None,
) -> None:
    """Render a timeline into an MP4."""
    from reelcompiler.compiler import CompositionCompiler
    from reelcompiler.errors import CompileError

    settings = _load_settings(ctx)
    if profile:
        settings.codec_profile = profile
    compiler = CompositionCompiler.from_settings(settings)

    schema_bytes = Path(schema_path).read_bytes()
    cancel = threading.Event()

    console.print(f"[bold]Compiling {schema_path} with {len(media)} media file(s)...[/bold]\n")
    dest = Path(output)
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        compiler.runner.check_available()
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Decoding...", total=100)

            def on_event(event) -> None:
                progress.update(task, completed=event.progress, description=f"{event.stage}: {event.message}")

            video = compiler.compile(
                schema_bytes, list(media), cancel=cancel, on_event=on_event, overlay_timing=overlay_timing,
            )
        with video, open(dest, "wb") as f:
            for chunk in video:
                f.write(chunk)
    except CompileError as exc:
        console.print(f"[red]Error ({exc.kind}): {escape(exc.message)}[/red]")
        if exc.detail:
            console.print(f"[dim]{escape(exc.detail)}[/dim]")
        sys.exit(1)
    except KeyboardInterrupt:
        cancel.set()
        console.print("\n[yellow]Interrupted. Temporary files have been removed.[/yellow]")
        sys.exit(130)

    console.print(f"\n[bold green]Saved {dest} ({dest.stat().st_size / 1024:.1f} KB)[/bold green]")


# ------------------------------------------------------------------
# plan
# ------------------------------------------------------------------

@cli.command("plan")
@click.argument("schema_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("media", nargs=-1, type=click.Path(dir_okay=False))
@click.option("--output", "-o", default="reel.mp4", help="Output path written into the command")
@click.option("--profile", type=click.Choice(["reels", "pro"]), default=None, help="Codec profile")
@click.option("--overlay-timing", type=click.Choice(["visual", "text"]), default=None)
@click.pass_context
def cmd_plan(
    ctx: click.Context,
    schema_path: str,
    media: tuple[str, ...],
    output: str,
    profile: str | None,
    overlay_timing: str | None,
) -> None:
    """Print the encoder command for a timeline without running anything.

    Narration and music are shown as placeholder paths.
    """
    from reelcompiler import schema
    from reelcompiler.assembler import PROFILES, TextOptions, assemble, command_line
    from reelcompiler.errors import CompileError
    from reelcompiler.models import AssetHandle
    from reelcompiler.planner import plan

    settings = _load_settings(ctx)
    try:
        doc = schema.decode(Path(schema_path).read_bytes())
        narration = AssetHandle.from_path("narration.mp3") if doc.utterances() else None
        music = AssetHandle.from_path("music_trimmed.mp3") if doc.music.wanted else None
        compilation = plan(
            doc, list(media), narration, music,
            overlay_timing=overlay_timing or settings.overlay_timing,
            music_stem_seconds=settings.music_stem_seconds,
        )
    except CompileError as exc:
        console.print(f"[red]Error ({exc.kind}): {escape(exc.message)}[/red]")
        sys.exit(1)

    argv = assemble(
        compilation,
        output,
        PROFILES[profile or settings.codec_profile],
        TextOptions(font_size=settings.font_size, font_file=settings.font_file),
    )
    click.echo(command_line(argv, settings.ffmpeg_bin))


# ------------------------------------------------------------------
# genres
# ------------------------------------------------------------------

@cli.command("genres")
@click.pass_context
def cmd_genres(ctx: click.Context) -> None:
    """List the music catalogue."""
    from reelcompiler.music import CatalogueMusic

    catalogue = CatalogueMusic.from_settings(_load_settings(ctx))

    table = Table(title="Music catalogue")
    table.add_column("Genre", style="cyan")
    table.add_column("Clips", justify="right")
    table.add_column("Example")
    for genre in catalogue.genres():
        clips = catalogue.catalogue[genre]
        table.add_row(genre, str(len(clips)), clips[0] if clips else "")
    console.print(table)


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
