"""Spawns external processes and streams their output line by line."""
import asyncio
import os
import sys
import signal
import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from .constants import SUBPROCESS_CREATION_FLAGS, TERMINATE_GRACE_SECONDS
from .exceptions import SpawnError

STREAM_LIMIT = 1024 * 1024


class Origin(str, Enum):
    STDOUT = 'stdout'
    STDERR = 'stderr'


@dataclass(frozen=True)
class OutputLine:
    text: str
    origin: Origin


class ProcessHandle:
    """
    One running external process.

    Output from stdout and stderr is merged into a single sequence of tagged
    lines. Lines from the same stream keep their order.
    """
    _EOF = object()

    def __init__(self, process: asyncio.subprocess.Process, command: List[str], grace_period: float = TERMINATE_GRACE_SECONDS):
        self.process = process
        self.command = command
        self.grace_period = grace_period
        self.logger = logging.getLogger(__name__)
        self._lines: asyncio.Queue[Any] = asyncio.Queue()
        self._readers = [
            asyncio.create_task(self._pump(process.stdout, Origin.STDOUT)),
            asyncio.create_task(self._pump(process.stderr, Origin.STDERR)),
        ]
        self._exhausted = False
        self._exit_status: Optional[int] = None
        self._terminate_requested = False
        self._escalation: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def terminate_requested(self) -> bool:
        return self._terminate_requested

    @property
    def exit_status(self) -> int:
        """The exit code; only available once output is exhausted and the process reaped."""
        if not self._exhausted or self._exit_status is None:
            raise RuntimeError("Exit status is not available until the output has been consumed and the process reaped.")
        return self._exit_status

    async def _pump(self, stream: Optional[asyncio.StreamReader], origin: Origin):
        """Reads one stream, splitting on both newline and carriage return."""
        try:
            if stream is None:
                return
            pending = b''
            while True:
                chunk = await stream.read(65536)
                if not chunk:
                    break
                pending += chunk.replace(b'\r\n', b'\n').replace(b'\r', b'\n')
                *complete, pending = pending.split(b'\n')
                for raw in complete:
                    await self._lines.put(OutputLine(raw.decode('utf-8', 'replace'), origin))
                if len(pending) > STREAM_LIMIT:
                    await self._lines.put(OutputLine(pending.decode('utf-8', 'replace'), origin))
                    pending = b''
            if pending:
                await self._lines.put(OutputLine(pending.decode('utf-8', 'replace'), origin))
        except (OSError, ValueError) as e:
            self.logger.warning(f"Error reading {origin.value} of PID {self.pid}: {e}")
        finally:
            await self._lines.put(self._EOF)

    async def lines(self) -> AsyncIterator[OutputLine]:
        """Yields output lines until both streams are closed."""
        open_streams = len(self._readers)
        while open_streams:
            item = await self._lines.get()
            if item is self._EOF:
                open_streams -= 1
                continue
            yield item
        self._exhausted = True

    async def wait(self) -> int:
        """Waits for the process to exit and reaps it."""
        return_code = await self.process.wait()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._exit_status = return_code
        if self._escalation and not self._escalation.done():
            self._escalation.cancel()
        return return_code

    def terminate(self):
        """
        Requests the process to stop. Idempotent and best-effort.

        Sends an interrupt to the process group, then kills the process if it
        is still running after the grace period.
        """
        if self.process.returncode is not None or self._terminate_requested:
            return
        self._terminate_requested = True
        self.logger.info(f"Terminating process {self.pid}...")
        try:
            if sys.platform == 'win32':
                self.process.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                os.killpg(os.getpgid(self.process.pid), signal.SIGINT)
        except (ProcessLookupError, OSError) as e:
            self.logger.warning(f"Graceful termination of {self.pid} failed: {e}. Forcing termination...")
            self.kill()
            return
        self._escalation = asyncio.create_task(self._kill_after_grace())

    async def _kill_after_grace(self):
        try:
            await asyncio.wait_for(asyncio.shield(self.process.wait()), timeout=self.grace_period)
        except asyncio.TimeoutError:
            self.logger.warning(f"Process {self.pid} ignored the interrupt. Killing it.")
            self.kill()

    def kill(self):
        if self.process.returncode is not None:
            return
        try:
            if sys.platform == 'win32':
                self.process.kill()
            else:
                os.killpg(os.getpgid(self.process.pid), signal.SIGKILL)
        except (ProcessLookupError, OSError):
            try: self.process.kill()
            except (ProcessLookupError, OSError): pass  # Already gone


class ProcessRunner:
    """Starts external commands from an explicit argument vector, never through a shell."""

    def __init__(self, grace_period: float = TERMINATE_GRACE_SECONDS):
        self.grace_period = grace_period
        self.logger = logging.getLogger(__name__)

    async def spawn(self, executable_path: Union[str, Path], argv: Sequence[str]) -> ProcessHandle:
        """
        Starts `executable_path` with `argv`.

        Raises:
            SpawnError: If the executable is missing or cannot be executed.
        """
        command = [str(executable_path), *[str(arg) for arg in argv]]

        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['start_new_session'] = True

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
        except FileNotFoundError:
            raise SpawnError(f"Executable not found: {executable_path}") from None
        except PermissionError:
            raise SpawnError(f"Executable is not runnable: {executable_path}") from None
        except OSError as e:
            raise SpawnError(f"Spawn failed: {e}") from e

        self.logger.debug(f"Started PID {process.pid}: {command}")
        return ProcessHandle(process, command, self.grace_period)
