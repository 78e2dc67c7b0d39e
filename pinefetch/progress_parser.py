"""
Turns raw downloader and transcriber output lines into typed results.

The parser is stateless: every line is classified on its own. Anything it does
not recognise, including lines cut off at a buffer boundary, comes back as a
plain `LogLine`, so a malformed line can never break a running job.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .process_runner import Origin


class Phase(str, Enum):
    """Post-processing phases announced by the external tools."""
    AUDIO_EXTRACTION = 'audio_extraction'
    MERGING = 'merging'
    TRANSCRIPTION = 'transcription'


@dataclass(frozen=True)
class ProgressUpdate:
    percent: float
    speed: Optional[str]
    eta: Optional[str]
    text: str


@dataclass(frozen=True)
class PhaseMarker:
    phase: Phase
    text: str
    path: Optional[str] = None


@dataclass(frozen=True)
class ReportedPath:
    """A filesystem path the process says it wrote."""
    path: str
    text: str


@dataclass(frozen=True)
class LogLine:
    text: str
    is_error: bool


ParsedLine = Union[ProgressUpdate, PhaseMarker, ReportedPath, LogLine]

_ANSI_ESCAPE_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
_PROGRESS_RE = re.compile(
    r"^\[download\]\s+(?P<percent>\d+(?:\.\d+)?)%"
    r"(?:.*?\bat\s+(?P<speed>\S+))?"
    r"(?:.*?\bETA\s+(?P<eta>\S+))?"
)
_DESTINATION_RE = re.compile(r"^\[(?:download|ExtractAudio)\]\s+Destination:\s+(?P<path>.+)$")
_ALREADY_DOWNLOADED_RE = re.compile(r"^\[download\]\s+(?P<path>.+?) has already been downloaded")
_MERGER_RE = re.compile(r'^\[Merger\]\s+Merging formats into\s+"(?P<path>.+)"$')
_PHASE_RE = re.compile(r"^\[(?P<tag>ExtractAudio|Merger|transcribe|faster-whisper)\]", re.IGNORECASE)
_PHASE_TAGS = {
    'extractaudio': Phase.AUDIO_EXTRACTION,
    'merger': Phase.MERGING,
    'transcribe': Phase.TRANSCRIPTION,
    'faster-whisper': Phase.TRANSCRIPTION,
}
_UNKNOWN_VALUES = {'unknown', 'n/a', 'na', 'none', '--'}


def _optional_field(value: Optional[str]) -> Optional[str]:
    if not value or value.lower() in _UNKNOWN_VALUES:
        return None
    return value


def _is_reported_filepath(text: str) -> bool:
    """Matches the bare path printed by `--print after_move:filepath`."""
    if not text or text.startswith('['):
        return False
    if text.startswith(('http://', 'https://')):
        return False
    if text.upper().startswith(('WARNING:', 'ERROR:')):
        return False
    return True


def parse(line: str, origin: Origin) -> ParsedLine:
    """
    Classifies one output line.

    Args:
        line: The raw text of the line, with or without a trailing newline.
        origin: The stream the line came from.

    Returns:
        A `ProgressUpdate`, `PhaseMarker`, `ReportedPath`, or `LogLine`.
    """
    text = _ANSI_ESCAPE_RE.sub('', line).strip()

    if match := _PROGRESS_RE.match(text):
        try:
            percent = min(100.0, max(0.0, float(match.group('percent'))))
        except ValueError:
            return LogLine(text, origin is Origin.STDERR)
        return ProgressUpdate(percent, _optional_field(match.group('speed')),
                              _optional_field(match.group('eta')), text)

    if match := _PHASE_RE.match(text):
        phase = _PHASE_TAGS[match.group('tag').lower()]
        path = None
        if dest := (_DESTINATION_RE.match(text) or _MERGER_RE.match(text)):
            path = dest.group('path').strip()
        return PhaseMarker(phase, text, path)

    if match := (_DESTINATION_RE.match(text) or _ALREADY_DOWNLOADED_RE.match(text)):
        return ReportedPath(match.group('path').strip(), text)

    if origin is Origin.STDOUT and _is_reported_filepath(text):
        return ReportedPath(text, text)

    return LogLine(text, origin is Origin.STDERR)
