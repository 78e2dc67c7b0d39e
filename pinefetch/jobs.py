"""
Defines the data classes for a download job and its state machine.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, field_validator

from .constants import ALLOWED_URL_SCHEMES
from .exceptions import IllegalTransition


class JobState(str, Enum):
    """Lifecycle states of a download job."""
    QUEUED = 'queued'
    DOWNLOADING = 'downloading'
    TRANSCRIBING = 'transcribing'
    CANCELLING = 'cancelling'
    SUCCESS = 'success'
    ERROR = 'error'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_running(self) -> bool:
        return self in RUNNING_STATES


TERMINAL_STATES: FrozenSet[JobState] = frozenset({JobState.SUCCESS, JobState.ERROR, JobState.CANCELLED})
RUNNING_STATES: FrozenSet[JobState] = frozenset({JobState.DOWNLOADING, JobState.TRANSCRIBING})
# States in which a job may own a live process handle.
PROCESS_STATES: FrozenSet[JobState] = RUNNING_STATES | {JobState.CANCELLING}

ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.QUEUED: frozenset({JobState.DOWNLOADING, JobState.CANCELLING, JobState.CANCELLED}),
    JobState.DOWNLOADING: frozenset({JobState.TRANSCRIBING, JobState.SUCCESS, JobState.ERROR, JobState.CANCELLING}),
    JobState.TRANSCRIBING: frozenset({JobState.SUCCESS, JobState.ERROR, JobState.CANCELLING}),
    JobState.CANCELLING: frozenset({JobState.CANCELLED}),
    JobState.SUCCESS: frozenset(),
    JobState.ERROR: frozenset(),
    JobState.CANCELLED: frozenset(),
}


class DownloadRequest(BaseModel):
    """
    Immutable snapshot of what the user asked for.

    Attributes:
        url: The source URL; only http and https are accepted.
        format: The downloader's format selector string.
        output_dir: Optional override of the configured output directory.
        extract_audio: Post-process the download to audio only.
        audio_format: Optional audio encoding target (e.g. "mp3").
        transcribe_text: Run a text transcription pass after downloading.
    """
    model_config = ConfigDict(frozen=True)

    url: str
    format: str = 'bv*+ba/b'
    output_dir: Optional[Path] = None
    extract_audio: bool = False
    audio_format: Optional[str] = None
    transcribe_text: bool = False

    @field_validator('url')
    @classmethod
    def validate_url(cls, value: str) -> str:
        """Ensures the URL is an absolute http(s) URL."""
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme.lower() not in ALLOWED_URL_SCHEMES or not parsed.netloc:
            raise ValueError("URL must start with http:// or https://")
        return value

    @field_validator('format')
    @classmethod
    def validate_format(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Format selector is empty")
        return value.strip()

    @field_validator('output_dir', mode='before')
    @classmethod
    def validate_output_dir(cls, value: Any) -> Any:
        """Rejects an explicitly empty output directory."""
        if isinstance(value, str) and not value.strip():
            raise ValueError("Output directory is empty")
        return value


@dataclass(frozen=True)
class Progress:
    """Last-known progress; `None` means unknown, never zero."""
    percent: float = 0.0
    speed: Optional[str] = None
    eta: Optional[str] = None


@dataclass
class DownloadJob:
    """
    Represents a single download task and its place in the state machine.

    Attributes:
        job_id: A unique identifier for the job.
        request: The original request, never modified.
        output_dir: The resolved output directory for this job.
        created_at: FIFO ordering key assigned at enqueue time.
        state: The current lifecycle state.
        progress: The last progress reported by the downloader.
        output_path: The final artifact's path, only on success.
        exit_code: The failing process's exit code, only on error.
        error_message: A short failure description, only on error.
        process_handle: The live external process, owned by the download manager.
    """
    job_id: str
    request: DownloadRequest
    output_dir: Path
    created_at: int
    state: JobState = JobState.QUEUED
    progress: Progress = field(default_factory=Progress)
    output_path: Optional[Path] = None
    exit_code: Optional[int] = None
    error_message: Optional[str] = None
    process_handle: Optional[Any] = field(default=None, repr=False, compare=False)

    @property
    def url(self) -> str:
        return self.request.url

    @property
    def format(self) -> str:
        return self.request.format

    def transition(self, new_state: JobState, *, output_path: Optional[Path] = None,
                   exit_code: Optional[int] = None, error_message: Optional[str] = None) -> None:
        """
        Moves the job to `new_state` if the state machine allows it.

        Raises:
            IllegalTransition: If the move is not permitted, or a success
                transition carries no output path.
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise IllegalTransition(f"Job {self.job_id}: {self.state.value} -> {new_state.value} is not allowed")
        if new_state is JobState.SUCCESS and output_path is None:
            raise IllegalTransition(f"Job {self.job_id}: success requires an output path")
        if new_state.is_terminal and self.process_handle is not None:
            raise IllegalTransition(f"Job {self.job_id}: process handle still attached")

        self.state = new_state
        if new_state is JobState.SUCCESS:
            self.output_path = output_path
        elif new_state is JobState.ERROR:
            self.exit_code = exit_code
            self.error_message = error_message

    def update_progress(self, progress: Progress) -> bool:
        """Records progress while running. Returns False if it was discarded."""
        if not self.state.is_running:
            return False
        self.progress = progress
        return True

    def attach_handle(self, handle: Any) -> None:
        if self.process_handle is not None:
            raise IllegalTransition(f"Job {self.job_id} already owns a process")
        if self.state not in PROCESS_STATES:
            raise IllegalTransition(f"Job {self.job_id} cannot own a process while {self.state.value}")
        self.process_handle = handle

    def detach_handle(self) -> None:
        self.process_handle = None
