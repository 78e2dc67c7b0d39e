"""Locates the external executables the downloads depend on: yt-dlp, FFmpeg, Deno and Python."""
import os
import sys
import shutil
import logging
from pathlib import Path
from typing import Optional

from .constants import (
    APP_PATH, DEFAULT_EXECUTABLE_PATH, FFMPEG_SEARCH_DIRS, PYTHON_CANDIDATES,
    ENV_FFMPEG_LOCATION, ENV_DENO_PATH, ENV_TRANSCRIPTION_PYTHON
)
from .exceptions import ExecutableNotFound


def _exe_name(name: str) -> str:
    return f'{name}.exe' if sys.platform == 'win32' else name


def _env_path(variable: str) -> Optional[Path]:
    raw = os.environ.get(variable, '').strip()
    return Path(raw) if raw else None


class DependencyManager:
    """
    Resolves executable locations from configuration, environment, and PATH.

    All lookups are plain filesystem checks; callers on the event loop should
    run them through `asyncio.to_thread`.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def _find_executable(self, name: str) -> Optional[Path]:
        """Finds an executable, preferring a locally managed one."""
        local_path = APP_PATH / _exe_name(name)
        if local_path.exists():
            return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    def find_yt_dlp(self, configured: Optional[Path] = None) -> Path:
        """
        Resolves the downloader: configured path, then PATH, then the well-known fallback.

        Raises:
            ExecutableNotFound: If no candidate exists.
        """
        if configured and configured.exists():
            return configured
        if configured:
            self.logger.warning(f"Configured yt-dlp path does not exist: {configured}")
        found = self._find_executable('yt-dlp')
        if found:
            return found
        if DEFAULT_EXECUTABLE_PATH.exists():
            return DEFAULT_EXECUTABLE_PATH
        raise ExecutableNotFound("yt-dlp not found. Set its path in the settings.")

    def find_yt_dlp_for_version(self, explicit: Optional[str], configured: Optional[Path] = None) -> Path:
        """Like `find_yt_dlp`, but an explicit path must exist as given."""
        if explicit and explicit.strip():
            candidate = Path(explicit.strip())
            if candidate.exists():
                return candidate
            raise ExecutableNotFound(f"yt-dlp path not found: {candidate}")
        return self.find_yt_dlp(configured)

    @staticmethod
    def _has_ffmpeg_tools(directory: Path) -> bool:
        return (directory / _exe_name('ffmpeg')).exists() and (directory / _exe_name('ffprobe')).exists()

    def _normalize_ffmpeg_location(self, path: Path) -> Optional[Path]:
        """Returns the directory holding both ffmpeg and ffprobe, if `path` points at one."""
        if path.is_dir():
            return path if self._has_ffmpeg_tools(path) else None
        if path.is_file() and self._has_ffmpeg_tools(path.parent):
            return path.parent
        return None

    def find_ffmpeg_location(self, yt_dlp_path: Optional[Path] = None, configured: Optional[Path] = None) -> Optional[Path]:
        """Finds a directory with ffmpeg and ffprobe to pass as `--ffmpeg-location`."""
        candidates = [configured, _env_path(ENV_FFMPEG_LOCATION), APP_PATH, yt_dlp_path, *FFMPEG_SEARCH_DIRS]
        for tool in ('ffmpeg', 'ffprobe'):
            which = shutil.which(tool)
            candidates.append(Path(which) if which else None)

        for candidate in candidates:
            if candidate is None:
                continue
            location = self._normalize_ffmpeg_location(candidate)
            if location:
                return location
        return None

    def find_deno(self) -> Optional[Path]:
        """Finds a Deno runtime for yt-dlp's JavaScript challenges."""
        env_path = _env_path(ENV_DENO_PATH)
        if env_path and env_path.exists():
            return env_path
        return self._find_executable('deno')

    def find_python(self, configured: Optional[Path] = None) -> Optional[Path]:
        """Finds the interpreter used to run the transcription snippet."""
        for candidate in (configured, _env_path(ENV_TRANSCRIPTION_PYTHON)):
            if candidate and candidate.exists():
                return candidate
        if sys.executable and not getattr(sys, 'frozen', False):
            return Path(sys.executable)
        for name in PYTHON_CANDIDATES:
            found = shutil.which(name)
            if found:
                return Path(found)
        return None
