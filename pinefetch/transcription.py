"""
Builds the transcription step that runs after a download when text output is requested.

The transcription itself happens in a separate Python process running
faster-whisper; this module only prepares its argument vector.
"""

import os
from pathlib import Path
from typing import List, Optional

from .constants import DEFAULT_TRANSCRIPTION_MODEL, ENV_TRANSCRIPTION_MODEL

# Runs in the transcription interpreter: argv = audio_path transcript_path [model]
# The first line announces the phase; the last stdout line is the transcript path.
FASTER_WHISPER_SNIPPET = r'''
import sys
from pathlib import Path

try:
    from faster_whisper import WhisperModel
except Exception as exc:
    print(f"Failed to import faster_whisper: {exc}", file=sys.stderr)
    raise

audio_path = sys.argv[1]
output_path = Path(sys.argv[2])
model_name = sys.argv[3] if len(sys.argv) > 3 and sys.argv[3] else "base"

print(f"[transcribe] Transcribing {audio_path} with model {model_name}", flush=True)
model = WhisperModel(model_name, compute_type="int8")
segments, _ = model.transcribe(audio_path, beam_size=5)
lines = []
for segment in segments:
    text = segment.text.strip()
    if text:
        lines.append(text)

content = "\n".join(lines).strip()
if content:
    content += "\n"
output_path.write_text(content, encoding="utf-8")
print(str(output_path), flush=True)
'''


def transcript_path_for(audio_path: Path) -> Path:
    return audio_path.with_suffix('.txt')


def resolve_model(configured: Optional[str] = None) -> str:
    """The environment override wins over the configured model name."""
    env_model = os.environ.get(ENV_TRANSCRIPTION_MODEL, '').strip()
    return env_model or (configured or '').strip() or DEFAULT_TRANSCRIPTION_MODEL


def build_transcription_args(audio_path: Path, model: str) -> List[str]:
    """Arguments for the Python interpreter, excluding the interpreter itself."""
    return ['-c', FASTER_WHISPER_SNIPPET, str(audio_path), str(transcript_path_for(audio_path)), model]
