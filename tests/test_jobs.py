import asyncio
from pathlib import Path

import pytest
from pydantic import ValidationError

from pinefetch.events import EventBus, JobLog, QueueSnapshot
from pinefetch.exceptions import IllegalTransition, NotFound
from pinefetch.jobs import TERMINAL_STATES, DownloadJob, DownloadRequest, JobState, Progress
from pinefetch.registry import JobRegistry


def make_job(state=JobState.QUEUED) -> DownloadJob:
    job = DownloadJob('j1', DownloadRequest(url='https://example.com/a'), Path('/tmp'), created_at=1)
    job.state = state
    return job


def test_request_accepts_http_and_https():
    assert DownloadRequest(url='  https://example.com/a ').url == 'https://example.com/a'
    assert DownloadRequest(url='HTTP://example.com').format == 'bv*+ba/b'


@pytest.mark.parametrize('url', ['ftp://x', 'example.com/video', 'https://', 'file:///etc/passwd', ''])
def test_request_rejects_other_urls(url):
    with pytest.raises(ValidationError, match="http"):
        DownloadRequest(url=url)


def test_request_rejects_empty_format_and_output_dir():
    with pytest.raises(ValidationError, match="Format selector is empty"):
        DownloadRequest(url='https://example.com', format='  ')
    with pytest.raises(ValidationError, match="Output directory is empty"):
        DownloadRequest(url='https://example.com', output_dir='')


def test_request_is_immutable():
    request = DownloadRequest(url='https://example.com')
    with pytest.raises(ValidationError):
        request.url = 'https://other.example.com'


def test_happy_path_transitions():
    job = make_job()
    job.transition(JobState.DOWNLOADING)
    job.transition(JobState.TRANSCRIBING)
    job.transition(JobState.SUCCESS, output_path=Path('/tmp/a.txt'))
    assert job.state is JobState.SUCCESS
    assert job.output_path == Path('/tmp/a.txt')
    assert job.exit_code is None and job.error_message is None


def test_error_transition_records_details():
    job = make_job(JobState.DOWNLOADING)
    job.transition(JobState.ERROR, exit_code=1, error_message="boom")
    assert (job.exit_code, job.error_message, job.output_path) == (1, "boom", None)


def test_success_requires_output_path():
    job = make_job(JobState.DOWNLOADING)
    with pytest.raises(IllegalTransition):
        job.transition(JobState.SUCCESS)
    assert job.state is JobState.DOWNLOADING


@pytest.mark.parametrize('state', sorted(TERMINAL_STATES, key=lambda s: s.value))
def test_terminal_states_are_final(state):
    job = make_job(state)
    for target in JobState:
        with pytest.raises(IllegalTransition):
            job.transition(target, output_path=Path('/tmp/x'))


def test_cancelling_only_leads_to_cancelled():
    job = make_job(JobState.CANCELLING)
    with pytest.raises(IllegalTransition):
        job.transition(JobState.SUCCESS, output_path=Path('/tmp/x'))
    with pytest.raises(IllegalTransition):
        job.transition(JobState.ERROR)
    job.transition(JobState.CANCELLED)


def test_queued_cannot_skip_to_success():
    with pytest.raises(IllegalTransition):
        make_job().transition(JobState.SUCCESS, output_path=Path('/tmp/x'))


def test_terminal_transition_requires_released_process():
    job = make_job(JobState.DOWNLOADING)
    job.attach_handle(object())
    with pytest.raises(IllegalTransition):
        job.transition(JobState.ERROR, exit_code=1)
    job.detach_handle()
    job.transition(JobState.ERROR, exit_code=1)


def test_progress_only_applies_while_running():
    job = make_job(JobState.DOWNLOADING)
    assert job.update_progress(Progress(10.0, '1MiB/s', '00:10'))
    job.transition(JobState.CANCELLING)
    assert not job.update_progress(Progress(90.0))
    assert job.progress == Progress(10.0, '1MiB/s', '00:10')


def test_handle_rules():
    queued = make_job()
    with pytest.raises(IllegalTransition):
        queued.attach_handle(object())
    running = make_job(JobState.DOWNLOADING)
    running.attach_handle(object())
    with pytest.raises(IllegalTransition):
        running.attach_handle(object())


def test_registry_issues_unique_ids_in_fifo_order():
    registry = JobRegistry()
    jobs = [registry.create(DownloadRequest(url=f'https://example.com/{n}'), Path('/tmp')) for n in range(50)]
    assert len({job.job_id for job in jobs}) == 50
    assert registry.jobs() == jobs
    assert registry.next_queued() is jobs[0]
    jobs[0].state = JobState.DOWNLOADING
    assert registry.next_queued() is jobs[1]


def test_registry_lookup_and_clear():
    registry = JobRegistry()
    job = registry.create(DownloadRequest(url='https://example.com'), Path('/tmp'))
    assert registry.get(job.job_id) is job
    assert job.job_id in registry
    with pytest.raises(NotFound):
        registry.get('missing')
    assert registry.find('missing') is None
    assert registry.clear() == [job]
    assert len(registry) == 0


def test_snapshot_lists_only_unfinished_jobs():
    registry = JobRegistry()
    first = registry.create(DownloadRequest(url='https://example.com/1'), Path('/tmp'))
    second = registry.create(DownloadRequest(url='https://example.com/2', format='best'), Path('/tmp'))
    first.state = JobState.SUCCESS
    snapshot = QueueSnapshot.from_jobs(registry.jobs())
    assert [(entry.id, entry.format, entry.state) for entry in snapshot.jobs] == [(second.job_id, 'best', JobState.QUEUED)]


def test_event_bus_fans_out_and_drops_for_full_queues():
    async def scenario():
        bus = EventBus()
        fast = bus.subscribe()
        slow = bus.subscribe(maxsize=1)
        bus.emit(JobLog('j1', 'one'))
        bus.emit(JobLog('j1', 'two'))
        slow.close()
        bus.emit(JobLog('j1', 'three'))
        return fast.drain(), slow.drain()

    fast_events, slow_events = asyncio.run(scenario())
    assert [e.line for e in fast_events] == ['one', 'two', 'three']
    assert [e.line for e in slow_events] == ['one']
