"""
Defines application-wide constants and paths.

This module centralizes configuration for paths, URLs, and subprocess behavior,
adapting to whether the application is running from source or as a frozen executable.
"""

import sys
import subprocess
from pathlib import Path
from typing import Any, Dict

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # When bundled, helper binaries are shipped next to the executable.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'pinefetch').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.pinefetch'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Executables ---
DEFAULT_EXECUTABLE_PATH: Path = Path('/opt/homebrew/bin/yt-dlp')
FFMPEG_SEARCH_DIRS = (Path('/opt/homebrew/bin'), Path('/usr/local/bin'))
PYTHON_CANDIDATES = ('python3.12', 'python3.11', 'python3.10', 'python3', 'python')
DEFAULT_TRANSCRIPTION_MODEL = 'base'

ENV_FFMPEG_LOCATION = 'PINEFETCH_FFMPEG_LOCATION'
ENV_DENO_PATH = 'PINEFETCH_DENO_PATH'
ENV_TRANSCRIPTION_PYTHON = 'PINEFETCH_FASTER_WHISPER_PYTHON'
ENV_TRANSCRIPTION_MODEL = 'PINEFETCH_FASTER_WHISPER_MODEL'

# --- Downloader invocation ---
OUTPUT_FILENAME_TEMPLATE = '%(title)s.%(ext)s'
ALLOWED_URL_SCHEMES = ('http', 'https')
ERROR_TAIL_LINES = 20
MAX_CONCURRENT_DOWNLOADS = 20
TERMINATE_GRACE_SECONDS = 10.0
VERSION_CHECK_TIMEOUT = 15
INFO_TIMEOUT = 60

# Quality presets offered by the command-line front end.
PRESETS: Dict[str, Dict[str, Any]] = {
    'best': {'format': 'bv*+ba/b', 'extract_audio': False, 'audio_format': None, 'transcribe_text': False},
    '1080': {'format': 'bv*[height<=1080]+ba/b[height<=1080]', 'extract_audio': False, 'audio_format': None, 'transcribe_text': False},
    'audio_mp3': {'format': 'ba/b', 'extract_audio': True, 'audio_format': 'mp3', 'transcribe_text': False},
    'audio_opus': {'format': 'ba/b', 'extract_audio': True, 'audio_format': 'opus', 'transcribe_text': False},
    'text': {'format': 'ba/b', 'extract_audio': True, 'audio_format': 'mp3', 'transcribe_text': True},
}

# --- Release check ---
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36',
    'Accept': 'application/vnd.github+json',
}
REQUEST_TIMEOUT = 10
YT_DLP_LATEST_RELEASE_URL = 'https://api.github.com/repos/yt-dlp/yt-dlp/releases/latest'
