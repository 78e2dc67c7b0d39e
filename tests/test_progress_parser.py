from pinefetch.process_runner import Origin
from pinefetch.progress_parser import LogLine, Phase, PhaseMarker, ProgressUpdate, ReportedPath, parse

OUT = Origin.STDOUT
ERR = Origin.STDERR


def test_full_progress_line():
    result = parse("[download]  42.5% of 10.00MiB at 1.20MiB/s ETA 00:05", OUT)
    assert isinstance(result, ProgressUpdate)
    assert (result.percent, result.speed, result.eta) == (42.5, '1.20MiB/s', '00:05')


def test_progress_with_estimated_size_and_fragments():
    result = parse("[download]   7.3% of ~ 120.50MiB at  2.01MiB/s ETA 00:55 (frag 3/41)", OUT)
    assert isinstance(result, ProgressUpdate)
    assert (result.percent, result.speed, result.eta) == (7.3, '2.01MiB/s', '00:55')


def test_percent_only_progress_leaves_the_rest_unknown():
    result = parse("[download]  45.2% of 10.00MiB", OUT)
    assert isinstance(result, ProgressUpdate)
    assert result.percent == 45.2
    assert result.speed is None and result.eta is None


def test_unknown_speed_and_eta_are_none():
    result = parse("[download]   0.0% of 10.00MiB at  Unknown B/s ETA Unknown", OUT)
    assert isinstance(result, ProgressUpdate)
    assert result.speed is None
    assert result.eta is None


def test_finished_line_has_speed_but_no_eta():
    result = parse("[download] 100% of 10.00MiB in 00:00:02 at 4.50MiB/s", OUT)
    assert isinstance(result, ProgressUpdate)
    assert result.percent == 100.0
    assert result.speed == '4.50MiB/s'
    assert result.eta is None


def test_percent_is_clamped():
    assert parse("[download] 250.0% of 1MiB", OUT).percent == 100.0


def test_ansi_colour_codes_are_stripped():
    result = parse("\x1b[0;94m[download]\x1b[0m  12.0% of 3MiB at \x1b[0;32m1MiB/s\x1b[0m ETA 00:02", OUT)
    assert isinstance(result, ProgressUpdate)
    assert result.speed == '1MiB/s'


def test_truncated_progress_line_is_a_log_line():
    result = parse("[download]  4", OUT)
    assert result == LogLine("[download]  4", False)


def test_destination_line_reports_a_path():
    result = parse("[download] Destination: /media/clip.webm", OUT)
    assert result == ReportedPath('/media/clip.webm', "[download] Destination: /media/clip.webm")


def test_already_downloaded_reports_a_path():
    result = parse("[download] /media/clip.mp4 has already been downloaded", OUT)
    assert isinstance(result, ReportedPath)
    assert result.path == '/media/clip.mp4'


def test_audio_extraction_marker_carries_the_destination():
    result = parse("[ExtractAudio] Destination: /media/clip.mp3", OUT)
    assert isinstance(result, PhaseMarker)
    assert result.phase is Phase.AUDIO_EXTRACTION
    assert result.path == '/media/clip.mp3'


def test_merger_marker_carries_the_target():
    result = parse('[Merger] Merging formats into "/media/clip.mkv"', OUT)
    assert isinstance(result, PhaseMarker)
    assert result.phase is Phase.MERGING
    assert result.path == '/media/clip.mkv'


def test_transcription_markers():
    assert parse("[transcribe] Transcribing /media/clip.mp3 with model base", OUT).phase is Phase.TRANSCRIPTION
    assert parse("[faster-whisper] using python: /usr/bin/python3", OUT).phase is Phase.TRANSCRIPTION


def test_bare_stdout_line_is_the_final_filepath():
    assert parse("/media/clip.mp4\n", OUT) == ReportedPath('/media/clip.mp4', '/media/clip.mp4')


def test_stdout_noise_is_not_mistaken_for_a_path():
    assert isinstance(parse("[youtube] abc: Downloading webpage", OUT), LogLine)
    assert isinstance(parse("https://example.com/watch?v=1", OUT), LogLine)
    assert isinstance(parse("WARNING: falling back to generic extractor", OUT), LogLine)


def test_stderr_lines_are_errors():
    assert parse("ERROR: Unsupported URL: https://example.com", ERR) == \
        LogLine("ERROR: Unsupported URL: https://example.com", True)
    assert parse("/not/a/path/on/stderr", ERR).is_error


def test_blank_and_garbage_lines_never_raise():
    assert parse("", OUT) == LogLine("", False)
    assert isinstance(parse("\x00\xff[download] ???%", ERR), LogLine)
