"""Checks the installed yt-dlp version and the latest one published on GitHub."""
import asyncio
import sys
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiohttp
from packaging.version import InvalidVersion, Version, parse

from .constants import (
    REQUEST_HEADERS, REQUEST_TIMEOUT, SUBPROCESS_CREATION_FLAGS,
    VERSION_CHECK_TIMEOUT, YT_DLP_LATEST_RELEASE_URL
)
from .exceptions import ExecutableNotFound, VersionParseError


@dataclass(frozen=True)
class InstalledVersion:
    version: str
    resolved_path: Path


def parse_version(raw: str) -> Version:
    """
    Parses a yt-dlp version string such as "2024.08.06" or "v2024.08.06".

    Raises:
        VersionParseError: If the string is empty or not a version.
    """
    text = raw.strip()
    if text.startswith('v'):
        text = text[1:]
    if not text:
        raise VersionParseError("yt-dlp returned an empty version")
    try:
        return parse(text)
    except InvalidVersion as e:
        raise VersionParseError(f"Unrecognised yt-dlp version: {raw.strip()!r}") from e


def is_update_available(installed: str, latest: str) -> bool:
    return parse_version(latest) > parse_version(installed)


class VersionChecker:
    """Reports yt-dlp versions."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    async def get_installed_version(self, executable_path: Path) -> InstalledVersion:
        """
        Runs the executable with '--version' and returns the first line.

        Raises:
            ExecutableNotFound: If the executable is missing or cannot be run.
            VersionParseError: If it fails or prints something that is not a version.
        """
        kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(str(executable_path), '--version', **kwargs)
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=VERSION_CHECK_TIMEOUT)
        except (FileNotFoundError, PermissionError):
            raise ExecutableNotFound(f"yt-dlp not found or not executable: {executable_path}") from None
        except asyncio.TimeoutError:
            if process: process.kill()
            raise VersionParseError("Version check timed out") from None
        except OSError as e:
            raise ExecutableNotFound(f"Failed to run yt-dlp: {e}") from e

        if process.returncode != 0:
            details = stderr_bytes.decode('utf-8', 'replace').strip() or "no stderr"
            raise VersionParseError(f"yt-dlp exited {process.returncode}: {details}")

        lines = stdout_bytes.decode('utf-8', 'replace').strip().splitlines()
        version = lines[0].strip() if lines else ''
        parse_version(version)
        self.logger.info(f"Installed yt-dlp {version} at {executable_path}")
        return InstalledVersion(version, executable_path)

    async def get_latest_version(self, session: Optional[aiohttp.ClientSession] = None) -> Optional[str]:
        """
        Fetches the latest yt-dlp release tag from GitHub.

        Network and parsing problems are logged and reported as None.
        """
        owns_session = session is None
        if session is None:
            session = aiohttp.ClientSession()
        try:
            async with session.get(YT_DLP_LATEST_RELEASE_URL, headers=REQUEST_HEADERS,
                                   timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)) as response:
                response.raise_for_status()
                data = await response.json()
            if not isinstance(data, dict) or not data.get('tag_name'):
                self.logger.warning("Could not find a version tag in the GitHub API response.")
                return None
            latest = str(data['tag_name']).strip()
            parse_version(latest)
            return latest.lstrip('v')
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Failed to check for yt-dlp updates (network error): {e}")
            return None
        except (VersionParseError, ValueError) as e:
            self.logger.warning(f"Could not parse API response from GitHub: {e}")
            return None
        finally:
            if owns_session:
                await session.close()
