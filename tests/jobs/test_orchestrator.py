"""Unit tests for JobOrchestrator.

All Kubernetes calls hit MagicMock APIs; no cluster is contacted.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from dispatcher.core.exceptions import InvalidSessionKeyError, OrchestratorError
from dispatcher.jobs.manifest import session_hash
from dispatcher.jobs.orchestrator import JobOrchestrator, job_phase
from dispatcher.jobs.schemas import SESSION_KEY_ANNOTATION, JobRequest, SessionStatus

pytestmark = pytest.mark.unit


def _job(name: str, session_key: str | None = None, **status) -> MagicMock:
    job = MagicMock()
    job.metadata.name = name
    job.metadata.annotations = {SESSION_KEY_ANNOTATION: session_key} if session_key else {}
    job.status.conditions = status.pop("conditions", None)
    job.status.active = status.get("active")
    job.status.succeeded = status.get("succeeded")
    job.status.failed = status.get("failed")
    return job


def _condition(type_: str, status: str = "True") -> MagicMock:
    condition = MagicMock()
    condition.type = type_
    condition.status = status
    return condition


@pytest.fixture
async def orchestrator(batch_api, core_api, template):
    """Orchestrator whose monitor never gets past its initial delay."""
    orch = JobOrchestrator(batch_api, core_api, template, monitor_initial_delay_seconds=3600)
    yield orch
    await orch.shutdown()


@pytest.fixture
async def fast_orchestrator(batch_api, core_api, template):
    """Orchestrator that polls without sleeping, three attempts max."""
    orch = JobOrchestrator(
        batch_api,
        core_api,
        template,
        monitor_interval_seconds=0,
        monitor_max_attempts=3,
        monitor_initial_delay_seconds=0,
    )
    yield orch
    await orch.shutdown()


async def _drain_events(queue: asyncio.Queue, count: int, timeout: float = 1.0) -> list:
    events = []
    for _ in range(count):
        events.append(await asyncio.wait_for(queue.get(), timeout))
    return events


# ============================================================================
# job_phase
# ============================================================================


@pytest.mark.parametrize(
    "status,expected",
    [
        ({}, SessionStatus.STARTING),
        ({"active": 1}, SessionStatus.RUNNING),
        ({"succeeded": 1}, SessionStatus.COMPLETED),
        ({"failed": 1}, SessionStatus.ERROR),
        ({"active": 1, "failed": 1}, SessionStatus.RUNNING),
        ({"conditions": [_condition("Complete")]}, SessionStatus.COMPLETED),
        ({"conditions": [_condition("Failed")], "active": 1}, SessionStatus.ERROR),
        ({"conditions": [_condition("Failed", "False")], "active": 1}, SessionStatus.RUNNING),
    ],
)
def test_job_phase(status, expected):
    assert job_phase(_job("j", **status)) == expected


# ============================================================================
# submit
# ============================================================================


async def test_submit_creates_job_and_tracks_it(orchestrator, batch_api, make_request):
    job_name = await orchestrator.submit(make_request())

    batch_api.create_namespaced_job.assert_called_once()
    kwargs = batch_api.create_namespaced_job.call_args.kwargs
    assert kwargs["namespace"] == "claude"
    assert kwargs["body"].metadata.name == job_name
    assert job_name.startswith(f"claude-worker-{session_hash('C123-1700000000.000100')}-")

    assert orchestrator.job_for_session("C123-1700000000.000100") == job_name
    assert orchestrator.active_count() == 1


async def test_submit_publishes_starting(orchestrator, make_request):
    queue = orchestrator.feed.subscribe()
    job_name = await orchestrator.submit(make_request())

    event = queue.get_nowait()
    assert event.status == SessionStatus.STARTING
    assert event.job_name == job_name


async def test_concurrent_submits_create_one_job(orchestrator, batch_api, make_request):
    """Simultaneous submits for one key all receive the same job name."""
    request = make_request()

    names = await asyncio.gather(*[orchestrator.submit(request) for _ in range(10)])

    assert len(set(names)) == 1
    assert batch_api.create_namespaced_job.call_count == 1
    assert orchestrator.active_count() == 1


async def test_submits_for_different_keys_are_independent(orchestrator, batch_api, make_request):
    await asyncio.gather(
        orchestrator.submit(make_request(session_key="C1-1.0")),
        orchestrator.submit(make_request(session_key="C2-1.0")),
    )
    assert batch_api.create_namespaced_job.call_count == 2
    assert orchestrator.active_count() == 2


async def test_submit_adopts_job_found_in_cluster(orchestrator, batch_api, make_request):
    """After a restart the running Job for the key is reused, not duplicated."""
    key = "C123-1700000000.000100"
    batch_api.list_namespaced_job.return_value = MagicMock(
        items=[
            _job("claude-worker-old-done", key, succeeded=1),
            _job("claude-worker-other", "C999-1.0", active=1),
            _job("claude-worker-live", key, active=1),
        ]
    )

    job_name = await orchestrator.submit(make_request())

    assert job_name == "claude-worker-live"
    batch_api.create_namespaced_job.assert_not_called()
    selector = batch_api.list_namespaced_job.call_args.kwargs["label_selector"]
    assert f"session-hash={session_hash(key)}" in selector


async def test_submit_failure_raises_and_retains_nothing(orchestrator, batch_api, make_request):
    batch_api.create_namespaced_job.side_effect = RuntimeError("quota exceeded")

    with pytest.raises(OrchestratorError) as exc_info:
        await orchestrator.submit(make_request())

    err = exc_info.value
    assert err.operation == "create_job"
    assert err.namespace == "claude"
    assert err.job_name.startswith("claude-worker-")
    assert "quota exceeded" in str(err)
    assert orchestrator.active_count() == 0
    assert orchestrator._monitors == {}
    assert orchestrator._locks == {}


async def test_session_locks_are_released_after_submit(orchestrator, batch_api, make_request):
    batch_api.create_namespaced_job.side_effect = [RuntimeError("quota exceeded"), None]
    request = make_request()

    with pytest.raises(OrchestratorError):
        await orchestrator.submit(request)
    await asyncio.gather(orchestrator.submit(request), orchestrator.submit(request))

    assert batch_api.create_namespaced_job.call_count == 2
    assert orchestrator._locks == {}
    assert orchestrator._lock_users == {}


async def test_submit_rejects_unsafe_key_before_any_cluster_call(orchestrator, batch_api, make_request):
    """A request that bypassed model validation is still refused."""
    request = JobRequest.model_construct(**{**make_request().model_dump(), "session_key": "../../etc"})

    with pytest.raises(InvalidSessionKeyError):
        await orchestrator.submit(request)

    batch_api.list_namespaced_job.assert_not_called()
    batch_api.create_namespaced_job.assert_not_called()


# ============================================================================
# Monitoring
# ============================================================================


async def test_monitor_reports_running_then_completed(fast_orchestrator, batch_api, make_request):
    batch_api.read_namespaced_job.side_effect = [
        _job("j", active=1),
        _job("j", succeeded=1),
    ]
    queue = fast_orchestrator.feed.subscribe()

    job_name = await fast_orchestrator.submit(make_request())
    events = await _drain_events(queue, 3)

    assert [e.status for e in events] == [
        SessionStatus.STARTING,
        SessionStatus.RUNNING,
        SessionStatus.COMPLETED,
    ]
    assert all(e.job_name == job_name for e in events)
    assert fast_orchestrator.active_count() == 0


async def test_monitor_ceiling_publishes_timeout_without_delete(fast_orchestrator, batch_api, make_request):
    """Giving up locally never deletes the Job; its own deadline still applies."""
    batch_api.read_namespaced_job.return_value = _job("j", active=1)
    queue = fast_orchestrator.feed.subscribe()

    await fast_orchestrator.submit(make_request())
    events = await _drain_events(queue, 3)

    assert events[-1].status == SessionStatus.TIMEOUT
    assert batch_api.read_namespaced_job.call_count == 3
    batch_api.delete_namespaced_job.assert_not_called()
    assert fast_orchestrator.active_count() == 0
    assert fast_orchestrator.job_for_session("C123-1700000000.000100") is None


async def test_monitor_continues_after_read_errors(fast_orchestrator, batch_api, make_request):
    batch_api.read_namespaced_job.side_effect = [
        RuntimeError("apiserver unavailable"),
        _job("j", failed=1),
    ]
    queue = fast_orchestrator.feed.subscribe()

    await fast_orchestrator.submit(make_request())
    events = await _drain_events(queue, 2)

    assert events[-1].status == SessionStatus.ERROR
    assert batch_api.read_namespaced_job.call_count == 2


async def test_key_can_be_resubmitted_after_completion(fast_orchestrator, batch_api, make_request):
    batch_api.read_namespaced_job.return_value = _job("j", succeeded=1)
    queue = fast_orchestrator.feed.subscribe()

    await fast_orchestrator.submit(make_request())
    await _drain_events(queue, 2)
    await fast_orchestrator.submit(make_request())

    assert batch_api.create_namespaced_job.call_count == 2


# ============================================================================
# Cancel, queries, restore
# ============================================================================


async def test_cancel_deletes_with_background_propagation(orchestrator, batch_api, make_request):
    job_name = await orchestrator.submit(make_request())
    queue = orchestrator.feed.subscribe()

    assert await orchestrator.cancel(job_name) is True

    kwargs = batch_api.delete_namespaced_job.call_args.kwargs
    assert kwargs["name"] == job_name
    assert kwargs["body"].propagation_policy == "Background"
    assert orchestrator.active_count() == 0
    assert queue.get_nowait().status == SessionStatus.ERROR


async def test_cancel_failure_is_logged_not_raised(orchestrator, batch_api, make_request):
    job_name = await orchestrator.submit(make_request())
    batch_api.delete_namespaced_job.side_effect = RuntimeError("forbidden")

    assert await orchestrator.cancel(job_name) is False
    assert batch_api.delete_namespaced_job.call_count == 1
    assert orchestrator.active_count() == 1


async def test_get_job_status_returns_none_on_error(orchestrator, batch_api):
    batch_api.read_namespaced_job.side_effect = RuntimeError("boom")
    assert await orchestrator.get_job_status("j") is None


async def test_list_active_jobs(orchestrator, batch_api, make_request):
    job_name = await orchestrator.submit(make_request())
    batch_api.read_namespaced_job.return_value = _job(job_name, active=1)

    assert await orchestrator.list_active_jobs() == [
        {"name": job_name, "session_key": "C123-1700000000.000100", "status": "running"}
    ]


async def test_restore_active_jobs_adopts_unfinished_only(orchestrator, batch_api):
    batch_api.list_namespaced_job.return_value = MagicMock(
        items=[
            _job("claude-worker-a", "C1-1.0", active=1),
            _job("claude-worker-b", "C2-1.0", succeeded=1),
            _job("claude-worker-c", None, active=1),
        ]
    )

    restored = await orchestrator.restore_active_jobs()

    assert restored == 1
    assert orchestrator.job_for_session("C1-1.0") == "claude-worker-a"
    assert orchestrator.job_for_session("C2-1.0") is None


async def test_restore_survives_api_failure(orchestrator, batch_api):
    batch_api.list_namespaced_job.side_effect = RuntimeError("unreachable")
    assert await orchestrator.restore_active_jobs() == 0


async def test_get_job_logs_reads_first_pod(orchestrator, core_api):
    pod = MagicMock()
    pod.metadata.name = "claude-worker-a-xyz"
    core_api.list_namespaced_pod.return_value = MagicMock(items=[pod])
    core_api.read_namespaced_pod_log.return_value = "hello"

    assert await orchestrator.get_job_logs("claude-worker-a") == "hello"
    assert core_api.read_namespaced_pod_log.call_args.kwargs["name"] == "claude-worker-a-xyz"


async def test_get_job_logs_without_pods(orchestrator, core_api):
    core_api.list_namespaced_pod.return_value = MagicMock(items=[])
    assert await orchestrator.get_job_logs("claude-worker-a") is None


def test_extract_session_from_logs():
    logs = 'boot\nSESSION_DATA_START\n{"messages": 3}\nSESSION_DATA_END\nbye'
    assert JobOrchestrator.extract_session_from_logs(logs) == {"messages": 3}
    assert JobOrchestrator.extract_session_from_logs("no markers") is None
    assert JobOrchestrator.extract_session_from_logs("SESSION_DATA_START{oops SESSION_DATA_END") is None


async def test_wait_for_drain(orchestrator, make_request):
    assert await orchestrator.wait_for_drain(0.1) is True

    await orchestrator.submit(make_request())
    assert await orchestrator.wait_for_drain(0.05, poll_seconds=0.01) is False


async def test_shutdown_cancels_monitors_without_deleting(orchestrator, batch_api, make_request):
    await orchestrator.submit(make_request())
    await orchestrator.shutdown()

    assert orchestrator._monitors == {}
    batch_api.delete_namespaced_job.assert_not_called()
