import typer
from pathlib import Path
from typing import Optional
from rich.console import Console
from webmify.config.loader import load_config
from webmify.config.models import AppConfig
from webmify.domain.exceptions import InputNotFound, AlreadyRunning
from webmify.domain.models import JobState
from webmify.infrastructure.ffmpeg import FFmpegAdapter
from webmify.infrastructure.ffprobe import FFprobeAdapter
from webmify.infrastructure.ledger import SizeLedger
from webmify.infrastructure.library import OutputLibrary, format_size
from webmify.infrastructure.logging import setup_logging
from webmify.pipeline.manager import ConversionJobManager
from webmify.ui.console import ConsoleListener, library_table

app = typer.Typer(help="webmify - convert videos to WebM (VP9 + Opus)")
console = Console()

EXIT_CODES = {JobState.SUCCEEDED: 0, JobState.FAILED: 1, JobState.CANCELLED: 130}

ConfigOption = typer.Option(Path("conf/webmify.yaml"), "--config", "-c", help="Path to YAML config")
OutputDirOption = typer.Option(None, "--output-dir", "-d", help="Override the output directory")

def _load(config_path: Optional[Path], output_dir: Optional[Path] = None, debug: bool = False) -> AppConfig:
    try:
        config = load_config(config_path)
    except Exception as e:
        typer.secho(f"Error: invalid config {config_path}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    if output_dir is not None:
        config.storage.output_dir = output_dir.expanduser()
    if debug:
        config.debug = True
    return config

def _library(config: AppConfig) -> OutputLibrary:
    ledger = SizeLedger(config.storage.resolved_ledger_path)
    ledger.load()
    return OutputLibrary(config.storage.output_dir, ledger)

@app.command()
def convert(
    input_path: Path = typer.Argument(..., help="Video file to convert"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output .webm path (default: <output-dir>/<name>_webmify.webm)"),
    config_path: Optional[Path] = ConfigOption,
    output_dir: Optional[Path] = OutputDirOption,
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging")
):
    """Convert one video to WebM. Ctrl+C cancels the conversion."""
    config = _load(config_path, output_dir, debug)
    library = _library(config)
    logger = setup_logging(config.storage.output_dir, debug=config.debug)

    output_path = (output.expanduser() if output else library.default_output_path(input_path)).resolve()
    logger.info(f"webmify started: input={input_path}, output={output_path}")

    manager = ConversionJobManager(
        ledger=library.ledger,
        probe=FFprobeAdapter(config.encoder.ffprobe_path),
        encoder=FFmpegAdapter(config.encoder),
        progress_config=config.progress
    )
    listener = ConsoleListener(console)
    manager.add_listener(listener)

    error: Optional[str] = None
    try:
        with listener:
            manager.start(input_path.expanduser().resolve(), output_path)
            try:
                while not listener.done.wait(0.2):
                    pass
            except KeyboardInterrupt:
                manager.cancel()
                listener.done.wait()
    except (InputNotFound, AlreadyRunning) as e:
        error = str(e)
    finally:
        manager.close()

    if error is not None:
        typer.secho(f"Error: {error}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    color = typer.colors.GREEN if listener.outcome == JobState.SUCCEEDED else typer.colors.RED
    typer.secho(listener.message, fg=color, err=listener.outcome != JobState.SUCCEEDED)
    raise typer.Exit(code=EXIT_CODES.get(listener.outcome, 1))

@app.command("list")
def list_videos(
    config_path: Optional[Path] = ConfigOption,
    output_dir: Optional[Path] = OutputDirOption
):
    """List converted videos with their original sizes."""
    config = _load(config_path, output_dir)
    videos = _library(config).list()
    if not videos:
        console.print("[yellow]No converted videos yet.[/yellow]")
        return
    console.print(library_table(videos))

@app.command()
def delete(
    path: Path = typer.Argument(..., help="Converted video to delete"),
    config_path: Optional[Path] = ConfigOption,
    output_dir: Optional[Path] = OutputDirOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation")
):
    """Delete a converted video and forget its original size."""
    config = _load(config_path, output_dir)
    library = _library(config)
    path = path.expanduser().resolve()
    if not path.exists():
        typer.secho(f"Error: {path} does not exist.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    if not yes and not typer.confirm(f"Are you sure you want to delete {path.name}?"):
        raise typer.Exit(code=0)
    if not library.delete(path):
        typer.secho(f"Failed to delete {path}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Deleted {path.name}")

@app.command()
def probe(
    input_path: Path = typer.Argument(..., help="Video file to inspect"),
    config_path: Optional[Path] = ConfigOption
):
    """Show the metadata used for progress estimation."""
    config = _load(config_path)
    if not input_path.is_file():
        typer.secho(f"Error: {input_path} does not exist.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    adapter = FFprobeAdapter(config.encoder.ffprobe_path)
    metadata = adapter.probe(input_path)
    if metadata is None:
        typer.secho("Metadata unavailable; progress will be estimated from size and time.", fg=typer.colors.YELLOW)
        raise typer.Exit(code=2)
    try:
        info = adapter.get_stream_info(input_path)
        typer.echo(f"Stream:      {info['codec']} {info['width']}x{info['height']}")
    except (RuntimeError, ValueError) as e:
        typer.secho(f"Stream details unavailable: {e}", fg=typer.colors.YELLOW)
    typer.echo(f"Size:        {format_size(input_path.stat().st_size)}")
    typer.echo(f"Duration:    {metadata.duration_ms / 1000:.2f}s")
    typer.echo(f"Frame rate:  {metadata.frame_rate:.3f}")
    typer.echo(f"Frames:      {metadata.frame_count}")

if __name__ == "__main__":
    app()
