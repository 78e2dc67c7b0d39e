"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import signal
import logging
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TextColumn
from rich.table import Table
from rich.text import Text

from ._version import __version__
from .config import ConfigManager
from .constants import CONFIG_FILE, PRESETS
from .controller import AppController
from .events import JobLog, JobProgress, JobStateChanged
from .exceptions import PinefetchError
from .jobs import JobState
from .logging_config import handle_async_exception, setup_logging

console = Console()
log = logging.getLogger(__name__)

app = typer.Typer(
    name="pinefetch",
    help="Queue media downloads through yt-dlp and follow their progress.",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)
config_app = typer.Typer(help="Show or change the saved settings.")
app.add_typer(config_app, name="config")

STATE_STYLES = {
    JobState.QUEUED: "cyan",
    JobState.DOWNLOADING: "yellow",
    JobState.TRANSCRIBING: "magenta",
    JobState.CANCELLING: "grey62",
    JobState.SUCCESS: "green",
    JobState.ERROR: "red",
    JobState.CANCELLED: "grey50",
}


def _load_controller(verbose: int) -> AppController:
    config_manager = ConfigManager(CONFIG_FILE)
    settings = config_manager.load()
    console_level = "DEBUG" if verbose >= 2 else "INFO" if verbose == 1 else "WARNING"
    setup_logging(settings.log_level, console, console_level)
    asyncio.get_running_loop().set_exception_handler(handle_async_exception)
    return AppController(config_manager)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit.", is_eager=True),
):
    """Pinefetch download queue"""
    if version:
        console.print(f"[bold]pinefetch[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def download(
    urls: List[str] = typer.Argument(..., help="One or more http(s) URLs."),  # noqa: B008
    preset: str = typer.Option("best", "--preset", "-p", help=f"One of: {', '.join(PRESETS)}."),
    format_selector: Optional[str] = typer.Option(None, "--format", "-f", help="Raw yt-dlp format selector; overrides the preset's."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory."),
    extract_audio: Optional[bool] = typer.Option(None, "--extract-audio/--keep-video", help="Convert to audio only."),
    audio_format: Optional[str] = typer.Option(None, "--audio-format", help="Audio encoding, e.g. mp3 or opus."),
    transcribe: Optional[bool] = typer.Option(None, "--transcribe/--no-transcribe", help="Also write a text transcript."),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", min=1, max=20, help="Concurrent downloads for this run."),
    show_logs: bool = typer.Option(False, "--logs", help="Print yt-dlp output lines."),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase logging verbosity."),
):
    """Download one or more URLs and wait until every job has finished."""
    if preset not in PRESETS:
        console.print(f"[red]✗ Unknown preset '{preset}'. Choose from: {', '.join(PRESETS)}[/red]")
        raise typer.Exit(code=2)

    options = dict(PRESETS[preset])
    if format_selector: options['format'] = format_selector
    if extract_audio is not None: options['extract_audio'] = extract_audio
    if audio_format: options['audio_format'] = audio_format
    if transcribe is not None: options['transcribe_text'] = transcribe

    async def _download_async() -> int:
        controller = _load_controller(verbose)
        if jobs:
            controller.download_manager.override_concurrency(jobs)
        subscription = controller.subscribe()
        _install_interrupt_handler(controller)

        pending: Dict[str, str] = {}
        for url in urls:
            try:
                job_id = controller.enqueue({**options, 'url': url, 'output_dir': output})
            except PinefetchError as e:
                console.print(f"[red]✗ {url}: {e}[/red]")
                continue
            pending[job_id] = url
        if not pending:
            return 1

        results: Dict[str, JobStateChanged] = {}
        with Progress(TextColumn("{task.description}"), BarColumn(), TextColumn("{task.fields[status]}"),
                      console=console, transient=False) as progress:
            bars: Dict[str, TaskID] = {
                job_id: progress.add_task(_short(url), total=100, status="[cyan]queued")
                for job_id, url in pending.items()
            }
            async for event in subscription:
                if isinstance(event, JobProgress) and event.id in bars:
                    details = " ".join(part for part in (event.speed, f"ETA {event.eta}" if event.eta else None) if part)
                    progress.update(bars[event.id], completed=event.percent, status=f"[yellow]{event.percent:.1f}% {details}")
                elif isinstance(event, JobStateChanged) and event.id in bars:
                    style = STATE_STYLES.get(event.state, "white")
                    progress.update(bars[event.id], status=f"[{style}]{event.state.value}")
                    if event.state is JobState.SUCCESS:
                        progress.update(bars[event.id], completed=100)
                    if event.state.is_terminal:
                        results[event.id] = event
                elif isinstance(event, JobLog) and show_logs and event.id in bars:
                    progress.console.print(f"{event.id[:8]} {event.line}", style="red" if event.is_error else None,
                                           markup=False, highlight=False)
                if len(results) == len(pending):
                    break

        await controller.wait_until_idle()
        _print_summary(pending, results)
        return 0 if all(r.state is JobState.SUCCESS for r in results.values()) else 1

    raise typer.Exit(code=asyncio.run(_download_async()))


def _install_interrupt_handler(controller: AppController):
    """Ctrl-C cancels the whole queue instead of killing the interpreter."""
    loop = asyncio.get_running_loop()

    def _on_interrupt():
        console.print("[yellow]Interrupted. Cancelling all downloads...[/yellow]")
        controller.download_manager.clear()

    try:
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
    except (NotImplementedError, RuntimeError):
        log.debug("Signal handlers are not supported on this platform.")


def _short(url: str, width: int = 48) -> str:
    return url if len(url) <= width else url[:width - 1] + "…"


def _print_summary(pending: Dict[str, str], results: Dict[str, JobStateChanged]):
    table = Table(title="Downloads")
    table.add_column("Job", style="dim")
    table.add_column("URL")
    table.add_column("State")
    table.add_column("Result")
    for job_id, url in pending.items():
        result = results.get(job_id)
        if result is None:
            table.add_row(job_id[:8], url, "unknown", "")
            continue
        style = STATE_STYLES.get(result.state, "white")
        detail = result.output_path or result.error or ""
        if result.exit_code is not None:
            detail = f"(exit {result.exit_code}) {detail}"
        table.add_row(job_id[:8], Text(url), f"[{style}]{result.state.value}[/{style}]", Text(detail))
    console.print(table)


@app.command()
def info(
    url: str = typer.Argument(..., help="The video URL."),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True),
):
    """Show title, uploader, duration and available formats for a URL."""

    async def _info_async():
        controller = _load_controller(verbose)
        try:
            media = await controller.load_info(url)
        except PinefetchError as e:
            console.print(f"[red]✗ {e}[/red]")
            raise typer.Exit(code=1) from e

        console.print(f"[bold]{media.title or 'Untitled'}[/bold]")
        console.print(f"Uploader: {media.uploader or 'unknown'}")
        console.print(f"Duration: {media.duration if media.duration is not None else 'unknown'} s")
        if media.thumbnail:
            console.print(f"Thumbnail: {media.thumbnail}")
        if media.formats:
            table = Table(title="Formats")
            for column in ("id", "ext", "resolution", "fps", "vcodec", "acodec"):
                table.add_column(column)
            for fmt in media.formats:
                resolution = f"{fmt.width}x{fmt.height}" if fmt.width and fmt.height else ""
                table.add_row(fmt.format_id or "", fmt.ext or "", resolution,
                              f"{fmt.fps:g}" if fmt.fps else "", fmt.vcodec or "", fmt.acodec or "")
            console.print(table)

    asyncio.run(_info_async())


@app.command()
def version(
    path: Optional[str] = typer.Option(None, "--path", help="Check this yt-dlp binary instead of the configured one."),
    check_latest: bool = typer.Option(True, "--latest/--no-latest", help="Also look up the latest release."),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True),
):
    """Show the installed yt-dlp version."""

    async def _version_async():
        controller = _load_controller(verbose)
        try:
            if check_latest:
                report = await controller.check_for_update(path)
            else:
                installed = await controller.get_installed_version(path)
                report = {'installed': installed.version, 'path': str(installed.resolved_path), 'latest': None, 'update_available': False}
        except PinefetchError as e:
            console.print(f"[red]✗ {e}[/red]")
            raise typer.Exit(code=1) from e

        console.print(f"yt-dlp [cyan]{report['installed']}[/cyan] at {report['path']}")
        if report['latest']:
            console.print(f"Latest release: [cyan]{report['latest']}[/cyan]")
            if report['update_available']:
                console.print("[yellow]An update is available.[/yellow]")

    asyncio.run(_version_async())


@config_app.command("show")
def config_show():
    """Print the saved settings."""
    settings = ConfigManager(CONFIG_FILE).load()
    table = Table(title=str(CONFIG_FILE))
    table.add_column("Setting")
    table.add_column("Value")
    for key, value in settings.model_dump().items():
        table.add_row(key, "" if value is None else str(value))
    console.print(table)


@config_app.command("set")
def config_set(
    executable_path: Optional[str] = typer.Option(None, "--executable-path", help="Path to yt-dlp ('' to unset)."),
    output_dir: Optional[str] = typer.Option(None, "--output-dir", help="Default output directory ('' to unset)."),
    jobs: Optional[int] = typer.Option(None, "--jobs", help="Default number of concurrent downloads."),
    ffmpeg_location: Optional[str] = typer.Option(None, "--ffmpeg-location", help="Directory containing ffmpeg and ffprobe."),
    transcription_model: Optional[str] = typer.Option(None, "--transcription-model", help="faster-whisper model name."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="File log level."),
):
    """Change saved settings. Only the given options are updated."""
    partial = {
        'executable_path': executable_path,
        'default_output_dir': output_dir,
        'max_concurrent_downloads': jobs,
        'ffmpeg_location': ffmpeg_location,
        'transcription_model': transcription_model,
        'log_level': log_level,
    }
    partial = {key: value for key, value in partial.items() if value is not None}
    if not partial:
        console.print("[yellow]Nothing to change.[/yellow]")
        raise typer.Exit()
    try:
        ConfigManager(CONFIG_FILE).set(partial)
    except PinefetchError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from e
    console.print("[green]✓ Settings saved.[/green]")
