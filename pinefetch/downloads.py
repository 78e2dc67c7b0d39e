"""Manages the download queue, job admission, and the yt-dlp processes behind each job."""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Deque, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from .config import ConfigManager
from .constants import ERROR_TAIL_LINES, MAX_CONCURRENT_DOWNLOADS, OUTPUT_FILENAME_TEMPLATE
from .dependencies import DependencyManager
from .events import EventBus, JobLog, JobProgress, JobStateChanged, QueueSnapshot, Subscription
from .exceptions import ExecutableNotFound, InvalidRequest, NotFound, ProcessError, SpawnError
from .jobs import DownloadJob, DownloadRequest, JobState, Progress
from .process_runner import Origin, ProcessRunner
from .progress_parser import LogLine, Phase, PhaseMarker, ProgressUpdate, ReportedPath, parse
from .registry import JobRegistry
from .transcription import build_transcription_args, resolve_model, transcript_path_for


@dataclass
class StageResult:
    exit_code: int
    reported_path: Optional[str]
    error_tail: List[str]


def build_download_args(job: DownloadJob, ffmpeg_location: Optional[Path], deno_path: Optional[Path]) -> List[str]:
    """
    Builds the yt-dlp argument vector for a job, excluding the executable.

    Raises:
        SpawnError: If the request needs FFmpeg and none was found.
    """
    request = job.request
    output_template = job.output_dir / OUTPUT_FILENAME_TEMPLATE
    args = [
        '--no-playlist', '--newline', '--progress', '--no-color',
        '--print', 'after_move:filepath',
        '-f', request.format,
        '-o', str(output_template),
    ]

    needs_ffmpeg = request.extract_audio or request.transcribe_text or '+' in request.format
    if ffmpeg_location:
        args.extend(['--ffmpeg-location', str(ffmpeg_location)])
    elif needs_ffmpeg:
        raise SpawnError("ffmpeg and ffprobe not found. Install ffmpeg (or place it next to yt-dlp) and try again.")

    if deno_path:
        args.extend(['--js-runtimes', f'deno:{deno_path}'])

    if request.extract_audio:
        args.append('--extract-audio')
        if request.audio_format:
            args.extend(['--audio-format', request.audio_format])

    # The URL goes after '--' so it can never be read as an option.
    args.extend(['--', request.url])
    return args


def extract_error_message(error_tail: List[str], exit_code: int, tool: str = 'yt-dlp') -> str:
    """Finds a concise error message in the last stderr lines of a process."""
    for line in reversed(error_tail):
        if line.lower().startswith('error:'):
            error_msg = line[6:].strip()
            return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg
    if error_tail:
        return error_tail[-1][:200]
    return f"{tool} exited with code {exit_code}"


class DownloadManager:
    """
    Owns the job registry and drives every admitted job's external processes.

    All methods must be called from the event loop thread. `enqueue`, `cancel`
    and `clear` return immediately; process output is consumed by one task per
    admitted job.
    """
    def __init__(self, config_manager: ConfigManager, runner: Optional[ProcessRunner] = None,
                 dependencies: Optional[DependencyManager] = None, events: Optional[EventBus] = None):
        """
        Initializes the DownloadManager.

        Args:
            config_manager: Supplies the executable path, output directory and concurrency limit.
            runner: Spawns the external processes.
            dependencies: Locates yt-dlp, FFmpeg, Deno and Python.
            events: The bus observers subscribe to.
        """
        self.config_manager = config_manager
        self.runner = runner or ProcessRunner()
        self.dependencies = dependencies or DependencyManager()
        self.events = events or EventBus()
        self.registry = JobRegistry()
        self.logger = logging.getLogger(__name__)
        self.job_tasks: Dict[str, asyncio.Task] = {}
        self._closing = False
        self._max_concurrent_override: Optional[int] = None

    @property
    def max_concurrent_downloads(self) -> int:
        if self._max_concurrent_override is not None:
            return self._max_concurrent_override
        return self.config_manager.settings.max_concurrent_downloads

    def override_concurrency(self, max_concurrent: Optional[int]):
        """Overrides the configured concurrency limit for this session (None restores it)."""
        if max_concurrent is not None and not 1 <= max_concurrent <= MAX_CONCURRENT_DOWNLOADS:
            raise InvalidRequest(f"The concurrency limit must be between 1 and {MAX_CONCURRENT_DOWNLOADS}")
        self._max_concurrent_override = max_concurrent
        self._admit()

    def subscribe(self, maxsize: int = 0) -> Subscription:
        return self.events.subscribe(maxsize)

    # --- Requests from the surrounding application ---

    def enqueue(self, request: Union[DownloadRequest, Mapping[str, Any]]) -> str:
        """
        Validates a request, queues it, and returns the new job id.

        Raises:
            InvalidRequest: If the URL or another field is malformed. No job is created.
        """
        if not isinstance(request, DownloadRequest):
            try:
                request = DownloadRequest.model_validate(dict(request))
            except ValidationError as e:
                error_details = e.errors()[0]
                raise InvalidRequest(error_details['msg'].removeprefix('Value error, ')) from e
            except (TypeError, ValueError) as e:
                raise InvalidRequest(f"Malformed request: {e}") from e

        job = self.registry.create(request, self._resolve_output_dir(request))
        self.logger.info(f"Queued job {job.job_id}: {request.url} (format {request.format})")
        self._emit_snapshot()
        self._admit()
        return job.job_id

    def cancel(self, job_id: str):
        """
        Cancels a job. Queued jobs end immediately; running jobs are asked to stop.

        Raises:
            NotFound: If the job is unknown, already finished, or already being cancelled.
        """
        job = self.registry.find(job_id)
        if job is None:
            raise NotFound(f"Job not found: {job_id}")
        if job.state.is_terminal or job.state is JobState.CANCELLING:
            raise NotFound(f"Job {job_id} is already {job.state.value}")

        if job.state is JobState.QUEUED:
            self._finish(job, JobState.CANCELLED)
            self._emit_snapshot()
            return

        job.transition(JobState.CANCELLING)
        self.logger.info(f"Cancelling job {job_id}...")
        self._emit_state(job)
        if job.process_handle is not None:
            job.process_handle.terminate()
        self._emit_snapshot()

    def clear(self) -> int:
        """Cancels every unfinished job, then removes all jobs. Returns how many were removed."""
        for job in self.registry.non_terminal():
            if job.state is JobState.CANCELLING:
                continue
            self.cancel(job.job_id)
        removed = self.registry.clear()
        self.logger.info(f"Cleared {len(removed)} job(s) from the queue.")
        self._emit_snapshot()
        return len(removed)

    def refresh_admission(self):
        """Re-evaluates admission, e.g. after the concurrency limit changed."""
        self._admit()

    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot.from_jobs(self.registry.jobs())

    async def join(self):
        """Waits until no job holds an execution slot."""
        while self.job_tasks:
            await asyncio.gather(*list(self.job_tasks.values()), return_exceptions=True)

    async def shutdown(self):
        """Cancels everything and waits for the processes to exit."""
        self.logger.info("Shutting down download manager...")
        self.clear()
        await self.join()
        self._closing = True

    # --- Admission ---

    def _resolve_output_dir(self, request: DownloadRequest) -> Path:
        output_dir = request.output_dir or self.config_manager.settings.default_output_dir or Path.home()
        return Path(output_dir).expanduser()

    def _admit(self):
        """Promotes the oldest queued jobs while execution slots are free."""
        if self._closing:
            return
        admitted = False
        while len(self.job_tasks) < self.max_concurrent_downloads:
            job = self.registry.next_queued()
            if job is None:
                break
            job.transition(JobState.DOWNLOADING)
            self.logger.info(f"Starting job {job.job_id}")
            self._emit_state(job)
            task = asyncio.create_task(self._run_job(job), name=f"job-{job.job_id}")
            task.add_done_callback(self._task_done_callback)
            self.job_tasks[job.job_id] = task
            admitted = True
        if admitted:
            self._emit_snapshot()

    def _task_done_callback(self, task: asyncio.Task):
        """Logs exceptions that escaped a job task."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass # Normal cancellation
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    # --- Execution ---

    async def _run_job(self, job: DownloadJob):
        """Runs one admitted job to a terminal state, whatever happens."""
        try:
            await self._execute(job)
        except asyncio.CancelledError:
            job.detach_handle()
            if not job.state.is_terminal:
                if job.state is not JobState.CANCELLING:
                    job.transition(JobState.CANCELLING)
                self._finish(job, JobState.CANCELLED)
            raise
        except Exception:
            self.logger.exception(f"Unexpected error during download for job {job.job_id}")
            job.detach_handle()
            if not job.state.is_terminal:
                self._finish_after_failure(job, None, "An unexpected exception occurred")
        finally:
            self.job_tasks.pop(job.job_id, None)
            self._admit()
            self._emit_snapshot()

    async def _execute(self, job: DownloadJob):
        settings = self.config_manager.settings
        try:
            yt_dlp = await asyncio.to_thread(self.dependencies.find_yt_dlp, settings.executable_path)
            ffmpeg = await asyncio.to_thread(self.dependencies.find_ffmpeg_location, yt_dlp, settings.ffmpeg_location)
            deno = await asyncio.to_thread(self.dependencies.find_deno)
            if self._finish_if_cancelling(job):
                return
            download = await self._run_stage(job, yt_dlp, build_download_args(job, ffmpeg, deno))
            if download is None:
                return
            self._check_exit(download, 'yt-dlp')

            if job.request.transcribe_text:
                await self._transcribe(job, self._resolve_reported_path(job, download.reported_path))
                return

            output_path = self._resolve_reported_path(job, download.reported_path)
            if output_path is None:
                output_path = job.output_dir
                self.logger.warning(f"[{job.job_id}] yt-dlp reported no output file; recording {output_path}")
                self._emit_log(job, f"No output file was reported; using output directory {output_path}", is_error=True)
            self._finish(job, JobState.SUCCESS, output_path=output_path)
        except (ExecutableNotFound, SpawnError) as e:
            self._finish_after_failure(job, None, str(e))
        except ProcessError as e:
            self._finish_after_failure(job, e.exit_code, str(e))

    async def _transcribe(self, job: DownloadJob, audio_path: Optional[Path]):
        """Runs the faster-whisper stage on the downloaded file."""
        if audio_path is None:
            raise SpawnError("Could not determine downloaded file path for transcription")
        if not await asyncio.to_thread(audio_path.exists):
            raise SpawnError(f"Downloaded file not found for transcription: {audio_path}")

        if job.state is JobState.DOWNLOADING:
            job.transition(JobState.TRANSCRIBING)
            self._emit_state(job)

        settings = self.config_manager.settings
        python = await asyncio.to_thread(self.dependencies.find_python, settings.transcription_python)
        if python is None:
            raise SpawnError("No Python runtime found for faster-whisper transcription")
        if self._finish_if_cancelling(job):
            return
        self._emit_log(job, f"[faster-whisper] using python: {python}")

        args = build_transcription_args(audio_path, resolve_model(settings.transcription_model))
        transcription = await self._run_stage(job, python, args, log_prefix='[faster-whisper] ')
        if transcription is None:
            return
        if transcription.exit_code != 0:
            details = extract_error_message(transcription.error_tail, transcription.exit_code, 'faster-whisper')
            raise ProcessError(
                f"faster-whisper failed (exit code {transcription.exit_code}): {details}. "
                "Ensure Python deps are installed (`pip install faster-whisper`).",
                transcription.exit_code,
            )

        transcript = self._resolve_reported_path(job, transcription.reported_path) or transcript_path_for(audio_path)
        if not await asyncio.to_thread(transcript.exists):
            raise ProcessError("faster-whisper finished but no transcript file was created", transcription.exit_code)
        self._emit_log(job, f"[transcript] saved: {transcript}")
        self._finish(job, JobState.SUCCESS, output_path=transcript)

    async def _run_stage(self, job: DownloadJob, executable: Path, args: List[str],
                         log_prefix: str = '') -> Optional[StageResult]:
        """
        Spawns one process for the job and consumes its output.

        Returns:
            The stage result, or None if the job was cancelled meanwhile (it is
            then already finalized as cancelled).
        """
        try:
            handle = await self.runner.spawn(executable, args)
        except SpawnError:
            if self._finish_if_cancelling(job):
                return None
            raise

        job.attach_handle(handle)
        if job.state is JobState.CANCELLING:
            handle.terminate()

        reported_path: Optional[str] = None
        error_tail: Deque[str] = deque(maxlen=ERROR_TAIL_LINES)
        try:
            async for line in handle.lines():
                self.logger.debug(f"[{job.job_id}] {line.text}")
                if line.origin is Origin.STDERR and line.text.strip():
                    error_tail.append(line.text.strip())
                candidate = self._apply_line(job, parse(line.text, line.origin), log_prefix)
                if candidate and self._is_output_candidate(job, candidate):
                    reported_path = candidate
            exit_code = await handle.wait()
        except asyncio.CancelledError:
            handle.kill()
            raise
        finally:
            job.detach_handle()

        if self._finish_if_cancelling(job, exit_code):
            return None
        return StageResult(exit_code, reported_path, list(error_tail))

    def _apply_line(self, job: DownloadJob, parsed, log_prefix: str = '') -> Optional[str]:
        """Applies one parsed line to the job. Returns a reported path, if any."""
        if isinstance(parsed, ProgressUpdate):
            progress = Progress(parsed.percent, parsed.speed, parsed.eta)
            if job.update_progress(progress):
                self.events.emit(JobProgress(job.job_id, progress.percent, progress.speed, progress.eta))
            return None
        if isinstance(parsed, PhaseMarker):
            self._emit_log(job, log_prefix + parsed.text)
            if parsed.phase is Phase.TRANSCRIPTION and job.state is JobState.DOWNLOADING:
                job.transition(JobState.TRANSCRIBING)
                self._emit_state(job)
            return parsed.path
        if isinstance(parsed, ReportedPath):
            self._emit_log(job, log_prefix + parsed.text)
            return parsed.path
        if isinstance(parsed, LogLine) and parsed.text:
            self._emit_log(job, log_prefix + parsed.text, parsed.is_error)
        return None

    @staticmethod
    def _check_exit(result: StageResult, tool: str):
        if result.exit_code != 0:
            raise ProcessError(extract_error_message(result.error_tail, result.exit_code, tool), result.exit_code)

    def _is_output_candidate(self, job: DownloadJob, reported: str) -> bool:
        """A reported path counts only if it is absolute or names an existing file."""
        if Path(reported.strip().strip('"')).is_absolute():
            return True
        if self._resolve_reported_path(job, reported).exists():
            return True
        self.logger.debug(f"[{job.job_id}] Ignoring stdout line as output path: {reported}")
        return False

    @staticmethod
    def _resolve_reported_path(job: DownloadJob, reported: Optional[str]) -> Optional[Path]:
        if not reported:
            return None
        path = Path(reported.strip().strip('"'))
        return path if path.is_absolute() else job.output_dir / path

    # --- Terminal transitions ---

    def _finish_if_cancelling(self, job: DownloadJob, exit_code: Optional[int] = None) -> bool:
        if job.state is not JobState.CANCELLING:
            return False
        if exit_code is not None:
            self.logger.debug(f"[{job.job_id}] Cancelled process exited with code {exit_code}")
        self._finish(job, JobState.CANCELLED)
        return True

    def _finish_after_failure(self, job: DownloadJob, exit_code: Optional[int], message: str):
        if self._finish_if_cancelling(job):
            return
        self._finish(job, JobState.ERROR, exit_code=exit_code, error_message=message)

    def _finish(self, job: DownloadJob, state: JobState, *, output_path: Optional[Path] = None,
                exit_code: Optional[int] = None, error_message: Optional[str] = None):
        job.transition(state, output_path=output_path, exit_code=exit_code, error_message=error_message)
        if state is JobState.ERROR:
            self.logger.error(f"Job {job.job_id} failed: {error_message}")
        else:
            self.logger.info(f"Job {job.job_id} {state.value}")
        self._emit_state(job)

    # --- Events ---

    def _emit_state(self, job: DownloadJob):
        self.events.emit(JobStateChanged(
            job.job_id,
            job.state,
            output_path=str(job.output_path) if job.state is JobState.SUCCESS else None,
            exit_code=job.exit_code if job.state is JobState.ERROR else None,
            error=job.error_message if job.state is JobState.ERROR else None,
        ))

    def _emit_log(self, job: DownloadJob, line: str, is_error: bool = False):
        self.events.emit(JobLog(job.job_id, line, is_error))

    def _emit_snapshot(self):
        self.events.emit(self.snapshot())
