import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import pytest

from pinefetch.config import ConfigManager
from pinefetch.downloads import DownloadManager
from pinefetch.exceptions import ExecutableNotFound
from pinefetch.process_runner import Origin, OutputLine

OUT = Origin.STDOUT
ERR = Origin.STDERR


class FakeHandle:
    """Replays scripted output. With `hold=True` it keeps running until released or terminated."""

    def __init__(self, lines: Iterable[Tuple[str, Origin]] = (), exit_code: int = 0, hold: bool = False,
                 exit_code_on_terminate: int = -2, lines_after_terminate: Iterable[Tuple[str, Origin]] = ()):
        self.script = list(lines)
        self.exit_code = exit_code
        self.hold = hold
        self.exit_code_on_terminate = exit_code_on_terminate
        self.lines_after_terminate = list(lines_after_terminate)
        self.terminate_calls = 0
        self.kill_calls = 0
        self._stop = asyncio.Event()

    async def lines(self):
        for text, origin in self.script:
            await asyncio.sleep(0)
            yield OutputLine(text, origin)
        if self.hold:
            await self._stop.wait()
            if self.terminate_calls:
                for text, origin in self.lines_after_terminate:
                    yield OutputLine(text, origin)

    async def wait(self) -> int:
        return self.exit_code_on_terminate if self.terminate_calls else self.exit_code

    def release(self):
        self._stop.set()

    def terminate(self):
        self.terminate_calls += 1
        self._stop.set()

    def kill(self):
        self.kill_calls += 1
        self._stop.set()


@dataclass
class SpawnCall:
    executable: Path
    args: List[str]
    handle: FakeHandle


class FakeRunner:
    """Hands out FakeHandles in spawn order from a list of scripts."""

    def __init__(self):
        self.scripts: List[dict] = []
        self.spawned: List[SpawnCall] = []
        self.error: Optional[Exception] = None

    def script(self, **kwargs) -> 'FakeRunner':
        self.scripts.append(kwargs)
        return self

    async def spawn(self, executable, argv: Sequence[str]) -> FakeHandle:
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        handle = FakeHandle(**(self.scripts.pop(0) if self.scripts else {}))
        self.spawned.append(SpawnCall(Path(executable), list(argv), handle))
        return handle

    def urls(self) -> List[str]:
        return [call.args[-1] for call in self.spawned if '--' in call.args]


class FakeDependencies:
    def __init__(self, ffmpeg: Optional[Path] = Path('/usr/local/bin'), python: Optional[Path] = Path('/usr/bin/python3')):
        self.ffmpeg = ffmpeg
        self.python = python

    def find_yt_dlp(self, configured=None) -> Path:
        return configured or Path('/usr/local/bin/yt-dlp')

    def find_yt_dlp_for_version(self, explicit, configured=None) -> Path:
        if explicit:
            raise ExecutableNotFound(f"yt-dlp path not found: {explicit}")
        return self.find_yt_dlp(configured)

    def find_ffmpeg_location(self, yt_dlp_path=None, configured=None) -> Optional[Path]:
        return self.ffmpeg

    def find_deno(self) -> Optional[Path]:
        return None

    def find_python(self, configured=None) -> Optional[Path]:
        return self.python


async def settle(rounds: int = 50):
    """Lets every ready task run for a while."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def config_manager(tmp_path: Path) -> ConfigManager:
    manager = ConfigManager(tmp_path / 'config' / 'config.json')
    manager.load()
    manager.set({'default_output_dir': str(tmp_path / 'out')})
    return manager


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def dependencies() -> FakeDependencies:
    return FakeDependencies()


@pytest.fixture
def make_manager(config_manager, runner, dependencies) -> Callable[[], DownloadManager]:
    def _make() -> DownloadManager:
        return DownloadManager(config_manager, runner, dependencies)  # type: ignore[arg-type]
    return _make
