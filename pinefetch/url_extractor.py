"""
Provides methods to extract media information from URLs using yt-dlp.
"""

import asyncio
import json
import sys
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ValidationError

from .constants import INFO_TIMEOUT, SUBPROCESS_CREATION_FLAGS
from .exceptions import InvalidRequest, MetadataError
from .jobs import DownloadRequest


class InfoFormat(BaseModel):
    format_id: Optional[str] = None
    ext: Optional[str] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    height: Optional[int] = None
    width: Optional[int] = None
    fps: Optional[float] = None


class MediaInfo(BaseModel):
    title: Optional[str] = None
    uploader: Optional[str] = None
    duration: Optional[int] = None
    thumbnail: Optional[str] = None
    formats: Optional[List[InfoFormat]] = None


class URLInfoExtractor:
    """
    Provides methods to extract information from URLs using yt-dlp.
    """
    def __init__(self, yt_dlp_path: Path, deno_path: Optional[Path] = None):
        """
        Initializes the URLInfoExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            deno_path: Optional Deno runtime passed through to yt-dlp.
        """
        self.yt_dlp_path = yt_dlp_path
        self.deno_path = deno_path
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    async def _run_command(self, command: List[str], timeout: int) -> Tuple[str, str]:
        """
        A robust wrapper for running a yt-dlp command.

        Args:
            command: The command and its arguments as a list of strings.
            timeout: The timeout in seconds for the command.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            MetadataError: On any failure (e.g., timeout, non-zero exit code).
        """
        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
            stdout = stdout_bytes.decode('utf-8', 'replace')
            stderr = stderr_bytes.decode('utf-8', 'replace')

        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise MetadataError("yt-dlp executable not found.")
        except asyncio.TimeoutError:
            if process: process.kill()
            self.logger.error(f"yt-dlp command timed out: {' '.join(command)}")
            raise MetadataError("Media info command timed out.")
        except OSError as e:
            self.logger.error(f"OS error running yt-dlp: {e}")
            raise MetadataError(f"OS error: {e}")
        except asyncio.CancelledError:
            if process: process.kill()
            raise

        if process.returncode != 0:
            error_msg = self._parse_yt_dlp_error(stderr)
            self.logger.error(f"yt-dlp exited {process.returncode} for '{command[-1]}'. Stderr: {stderr.strip()}")
            raise MetadataError(f"yt-dlp exited {process.returncode}: {error_msg}")

        return stdout, stderr

    async def load_info(self, url: str) -> MediaInfo:
        """
        Retrieves title, uploader, duration, thumbnail and formats for a single video.

        Raises:
            InvalidRequest: If the URL is not an http(s) URL.
            MetadataError: If yt-dlp fails or prints something that is not JSON.
        """
        try:
            url = DownloadRequest(url=url).url
        except ValidationError as e:
            raise InvalidRequest("URL must start with http:// or https://") from e

        command = [str(self.yt_dlp_path), '--dump-json', '--no-playlist', '--no-warnings']
        if self.deno_path:
            command.extend(['--js-runtimes', f'deno:{self.deno_path}'])
        command.extend(['--', url])
        stdout, _ = await self._run_command(command, timeout=INFO_TIMEOUT)

        try:
            data: Dict[str, Any] = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise MetadataError(f"Invalid JSON from yt-dlp: {e}") from e
        if not isinstance(data, dict):
            raise MetadataError(f"Unexpected JSON from yt-dlp: {type(data).__name__}")
        return self._to_media_info(data)

    def _to_media_info(self, data: Dict[str, Any]) -> MediaInfo:
        formats = None
        if isinstance(data.get('formats'), list):
            formats = []
            for raw in data['formats']:
                if not isinstance(raw, dict):
                    continue
                try:
                    formats.append(InfoFormat.model_validate({k: raw.get(k) for k in InfoFormat.model_fields}))
                except ValidationError:
                    self.logger.debug(f"Skipping unreadable format entry: {raw.get('format_id')}")

        duration = data.get('duration')
        return MediaInfo(
            title=data.get('title') if isinstance(data.get('title'), str) else None,
            uploader=next((data[k] for k in ('uploader', 'uploader_id') if isinstance(data.get(k), str)), None),
            duration=int(duration) if isinstance(duration, (int, float)) else None,
            thumbnail=data.get('thumbnail') if isinstance(data.get('thumbnail'), str) else None,
            formats=formats,
        )
