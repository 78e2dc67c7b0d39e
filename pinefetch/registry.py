"""In-memory arena of download jobs, keyed by job id."""
import itertools
import logging
import uuid
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .exceptions import NotFound
from .jobs import DownloadJob, DownloadRequest, JobState


class JobRegistry:
    """
    The single source of truth for job state.

    Jobs are kept in creation order. Only the download manager mutates the
    registry, and it does so from the event loop thread.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._jobs: Dict[str, DownloadJob] = {}
        self._sequence = itertools.count(1)

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __iter__(self) -> Iterator[DownloadJob]:
        return iter(self.jobs())

    def create(self, request: DownloadRequest, output_dir: Path) -> DownloadJob:
        """Creates a queued job with a fresh id and the next FIFO position."""
        job_id = uuid.uuid4().hex
        job = DownloadJob(job_id, request, output_dir, created_at=next(self._sequence))
        self._jobs[job_id] = job
        self.logger.debug(f"Registered job {job_id} for {request.url}")
        return job

    def get(self, job_id: str) -> DownloadJob:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise NotFound(f"Job not found: {job_id}") from None

    def find(self, job_id: str) -> Optional[DownloadJob]:
        return self._jobs.get(job_id)

    def jobs(self) -> List[DownloadJob]:
        """All jobs, oldest first."""
        return sorted(self._jobs.values(), key=lambda job: job.created_at)

    def in_state(self, *states: JobState) -> List[DownloadJob]:
        return [job for job in self.jobs() if job.state in states]

    def non_terminal(self) -> List[DownloadJob]:
        return [job for job in self.jobs() if not job.state.is_terminal]

    def next_queued(self) -> Optional[DownloadJob]:
        """The oldest job still waiting for admission."""
        queued = self.in_state(JobState.QUEUED)
        return queued[0] if queued else None

    def clear(self) -> List[DownloadJob]:
        """Removes every job in one step and returns what was removed."""
        removed = self.jobs()
        self._jobs.clear()
        return removed
