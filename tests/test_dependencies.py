from pathlib import Path

import pytest

from pinefetch.dependencies import DependencyManager
from pinefetch.exceptions import ExecutableNotFound
from pinefetch.transcription import build_transcription_args, resolve_model, transcript_path_for


def touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text('', encoding='utf-8')
    return path


def test_configured_yt_dlp_wins(tmp_path):
    yt_dlp = touch(tmp_path / 'bin' / 'yt-dlp')
    assert DependencyManager().find_yt_dlp(yt_dlp) == yt_dlp


def test_explicit_version_path_must_exist(tmp_path):
    manager = DependencyManager()
    with pytest.raises(ExecutableNotFound, match="not found"):
        manager.find_yt_dlp_for_version(str(tmp_path / 'missing'))
    yt_dlp = touch(tmp_path / 'yt-dlp')
    assert manager.find_yt_dlp_for_version(f"  {yt_dlp}  ") == yt_dlp


def test_ffmpeg_location_needs_both_tools(tmp_path):
    tools = tmp_path / 'ffmpeg'
    ffmpeg = touch(tools / 'ffmpeg')
    manager = DependencyManager()
    assert manager._normalize_ffmpeg_location(tools) is None
    touch(tools / 'ffprobe')
    assert manager.find_ffmpeg_location(configured=tools) == tools
    assert manager.find_ffmpeg_location(configured=ffmpeg) == tools


def test_ffmpeg_location_from_environment(tmp_path, monkeypatch):
    tools = tmp_path / 'tools'
    touch(tools / 'ffmpeg')
    touch(tools / 'ffprobe')
    monkeypatch.setenv('PINEFETCH_FFMPEG_LOCATION', str(tools))
    assert DependencyManager().find_ffmpeg_location(configured=tmp_path / 'elsewhere') == tools


def test_deno_from_environment(tmp_path, monkeypatch):
    deno = touch(tmp_path / 'deno')
    monkeypatch.setenv('PINEFETCH_DENO_PATH', str(deno))
    assert DependencyManager().find_deno() == deno


def test_configured_python_wins(tmp_path, monkeypatch):
    python = touch(tmp_path / 'venv' / 'python')
    monkeypatch.delenv('PINEFETCH_FASTER_WHISPER_PYTHON', raising=False)
    assert DependencyManager().find_python(python) == python


def test_transcription_args(monkeypatch):
    monkeypatch.delenv('PINEFETCH_FASTER_WHISPER_MODEL', raising=False)
    audio = Path('/media/clip.mp3')
    assert transcript_path_for(audio) == Path('/media/clip.txt')
    args = build_transcription_args(audio, resolve_model('small'))
    assert args[0] == '-c'
    assert '[transcribe]' in args[1]
    assert args[2:] == [str(audio), str(Path('/media/clip.txt')), 'small']


def test_model_from_environment_wins(monkeypatch):
    monkeypatch.setenv('PINEFETCH_FASTER_WHISPER_MODEL', 'large-v3')
    assert resolve_model('small') == 'large-v3'
    monkeypatch.setenv('PINEFETCH_FASTER_WHISPER_MODEL', ' ')
    assert resolve_model(None) == 'base'
