from __future__ import annotations

import asyncio
import time
from types import SimpleNamespace

import pytest
from arq import Retry
from arq.constants import in_progress_key_prefix

from kbingest.core.errors import PayloadValidationError, WorkspaceNotFoundError
from kbingest.domain.jobs import FailureEvent, FailureReason, IngestDocument, IngestPayload
from kbingest.services.ingest.classifier import classify_failure
from kbingest.services.ingest.events import FailureEventBus
from kbingest.services.ingest.queue import (
    JobQueue,
    backoff_delay_ms,
    priority_head_start_ms,
    validate_ingest_payload,
)
from kbingest.tests.utils.fakes import make_settings


def _payload(workspace_id: str = "ws1", ingestion_id: str = "i1") -> IngestPayload:
    return IngestPayload(
        workspace_id=workspace_id,
        ingestion_id=ingestion_id,
        documents=[IngestDocument(content="x")],
    )


class _RecordingBus:
    def __init__(self, fail: bool = False) -> None:
        self.events: list[FailureEvent] = []
        self.fail = fail

    async def publish(self, event: FailureEvent) -> str:
        if self.fail:
            raise ConnectionError("redis down")
        self.events.append(event)
        return f"{len(self.events)}-0"


def test_backoff_doubles_from_base() -> None:
    assert [backoff_delay_ms(2000, attempt) for attempt in (1, 2, 3, 4)] == [2000, 4000, 8000, 16000]
    assert backoff_delay_ms(0, 3) == 0


def test_priority_head_start_favors_lower_numbers() -> None:
    assert priority_head_start_ms(None, 60000) == 0
    assert priority_head_start_ms(1, 60000) == 60000
    assert priority_head_start_ms(4, 60000) == 15000


@pytest.mark.asyncio
async def test_enqueue_ingest_declares_default_retry_policy(fake_redis) -> None:
    queue = JobQueue(fake_redis, make_settings())
    job_id = await queue.enqueue_ingest(_payload())

    job = fake_redis.jobs[job_id]
    payload_wire, options_wire = job["args"]
    assert job["function"] == "ingest"
    assert job["queue"] == "ingest"
    assert payload_wire["workspaceId"] == "ws1"
    assert payload_wire["ingestionId"] == "i1"
    assert options_wire["maxAttempts"] == 5
    assert options_wire["backoff"] == {"kind": "exponential", "baseDelayMs": 2000}
    assert "enqueuedAt" in options_wire


@pytest.mark.asyncio
async def test_enqueue_clamps_attempt_budget(fake_redis) -> None:
    queue = JobQueue(fake_redis, make_settings(ingest_max_attempts_limit=10))
    high = await queue.enqueue("ingest", _payload(), max_attempts=50)
    low = await queue.enqueue("ingest", _payload(), max_attempts=0)

    assert fake_redis.jobs[high]["args"][1]["maxAttempts"] == 10
    assert fake_redis.jobs[low]["args"][1]["maxAttempts"] == 1


@pytest.mark.asyncio
async def test_priority_and_delay_shift_queue_score(fake_redis) -> None:
    queue = JobQueue(fake_redis, make_settings())
    normal = await queue.enqueue("ingest", _payload())
    urgent = await queue.enqueue("ingest", _payload(), priority=1)
    later = await queue.enqueue("ingest", _payload(), delay_ms=30000)

    scores = {job_id: fake_redis.jobs[job_id]["score"] for job_id in (normal, urgent, later)}
    assert scores[urgent] < scores[normal] < scores[later]
    assert scores[later] - scores[normal] >= 29000


@pytest.mark.asyncio
async def test_enqueue_with_existing_job_id_keeps_the_id(fake_redis) -> None:
    queue = JobQueue(fake_redis, make_settings())
    first = await queue.enqueue("ingest", _payload(), job_id="fixed")
    second = await queue.enqueue("ingest", _payload(), job_id="fixed")

    assert first == second == "fixed"
    assert len(fake_redis.jobs) == 1


def test_validate_ingest_payload_limits() -> None:
    settings = make_settings(max_documents_per_ingest=2, max_document_chars=10)
    with pytest.raises(PayloadValidationError):
        validate_ingest_payload(IngestPayload(workspace_id="ws1", documents=[]), settings)
    with pytest.raises(PayloadValidationError):
        validate_ingest_payload(
            IngestPayload(workspace_id="ws1", documents=[IngestDocument(text="a")] * 3), settings
        )
    with pytest.raises(PayloadValidationError):
        validate_ingest_payload(IngestPayload(workspace_id="ws1", documents=[IngestDocument(title="t")]), settings)
    with pytest.raises(PayloadValidationError):
        validate_ingest_payload(
            IngestPayload(workspace_id="ws1", documents=[IngestDocument(text="x" * 11)]), settings
        )
    validate_ingest_payload(IngestPayload(workspace_id="ws1", documents=[IngestDocument(content="ok")]), settings)


def test_ingestion_id_is_generated_once() -> None:
    payload = IngestPayload(workspace_id="ws1", documents=[IngestDocument(content="x")])
    replay = IngestPayload.model_validate(payload.to_wire())

    assert payload.ingestion_id
    assert replay.ingestion_id == payload.ingestion_id


@pytest.mark.asyncio
async def test_counts_split_waiting_delayed_active_and_results(fake_redis) -> None:
    queue = JobQueue(fake_redis, make_settings())
    first = await queue.enqueue("ingest", _payload())
    await queue.enqueue("ingest", _payload())
    await queue.enqueue("ingest", _payload())
    await queue.enqueue("ingest", _payload(), delay_ms=60000)
    await fake_redis.set(in_progress_key_prefix + first, "1")
    fake_redis.results = [
        SimpleNamespace(queue_name="ingest", success=True),
        SimpleNamespace(queue_name="ingest", success=False),
        SimpleNamespace(queue_name="other", success=False),
    ]

    counts = await queue.counts()

    assert (counts.waiting, counts.delayed, counts.active) == (2, 1, 1)
    assert (counts.completed, counts.failed) == (1, 1)


@pytest.mark.asyncio
async def test_run_job_returns_processor_result(fake_redis) -> None:
    bus = _RecordingBus()
    queue = JobQueue(fake_redis, make_settings(), events=bus)
    seen: list[tuple[str, str]] = []

    async def processor(payload: IngestPayload, job_id: str) -> dict:
        seen.append((payload.workspace_id, job_id))
        return {"ok": True}

    result = await queue.run_job({"job_id": "job-1", "job_try": 1}, _payload().to_wire(), {"maxAttempts": 3}, processor)

    assert result == {"ok": True}
    assert seen == [("ws1", "job-1")]
    assert bus.events == []


@pytest.mark.asyncio
async def test_run_job_schedules_backoff_until_budget_exhausted(fake_redis) -> None:
    bus = _RecordingBus()
    queue = JobQueue(fake_redis, make_settings(), events=bus)
    options = {"maxAttempts": 3, "backoff": {"kind": "exponential", "baseDelayMs": 2000}}

    async def processor(payload: IngestPayload, job_id: str) -> None:
        raise RuntimeError("Qdrant timeout")

    deferrals = []
    for attempt in (1, 2):
        with pytest.raises(Retry) as retry:
            await queue.run_job({"job_id": "job-1", "job_try": attempt}, _payload().to_wire(), options, processor)
        deferrals.append(retry.value.defer_score)
    with pytest.raises(RuntimeError, match="Qdrant timeout"):
        await queue.run_job({"job_id": "job-1", "job_try": 3}, _payload().to_wire(), options, processor)

    assert deferrals == [2000, 4000]
    # One notification per failed attempt, not just the terminal one.
    assert [event.attempts_made for event in bus.events] == [1, 2, 3]
    assert [event.is_final for event in bus.events] == [False, False, True]
    assert all(event.failed_reason == "Qdrant timeout" for event in bus.events)
    assert bus.events[-1].payload["workspaceId"] == "ws1"


@pytest.mark.asyncio
async def test_non_retryable_errors_use_full_budget_by_default(fake_redis) -> None:
    bus = _RecordingBus()
    queue = JobQueue(fake_redis, make_settings(), events=bus)

    async def processor(payload: IngestPayload, job_id: str) -> None:
        raise WorkspaceNotFoundError(payload.workspace_id)

    with pytest.raises(Retry):
        await queue.run_job({"job_id": "job-1", "job_try": 1}, _payload().to_wire(), {"maxAttempts": 5}, processor)
    assert bus.events[0].terminal is False


@pytest.mark.asyncio
async def test_fail_fast_setting_skips_remaining_attempts(fake_redis) -> None:
    bus = _RecordingBus()
    queue = JobQueue(fake_redis, make_settings(ingest_fail_fast_non_retryable=True), events=bus)

    async def processor(payload: IngestPayload, job_id: str) -> None:
        raise WorkspaceNotFoundError(payload.workspace_id)

    with pytest.raises(WorkspaceNotFoundError):
        await queue.run_job({"job_id": "job-1", "job_try": 1}, _payload().to_wire(), {"maxAttempts": 5}, processor)
    event = bus.events[0]
    assert event.terminal is True
    assert event.is_final is True
    assert event.attempts_made == 1


@pytest.mark.asyncio
async def test_publish_failure_does_not_mask_retry(fake_redis) -> None:
    queue = JobQueue(fake_redis, make_settings(), events=_RecordingBus(fail=True))

    async def processor(payload: IngestPayload, job_id: str) -> None:
        raise TimeoutError("upstream timed out")

    with pytest.raises(Retry):
        await queue.run_job({"job_id": "job-1", "job_try": 1}, _payload().to_wire(), {"maxAttempts": 2}, processor)


@pytest.mark.asyncio
async def test_events_reach_the_failure_stream(fake_redis) -> None:
    settings = make_settings()
    bus = FailureEventBus(fake_redis, settings)
    queue = JobQueue(fake_redis, settings, events=bus)

    async def processor(payload: IngestPayload, job_id: str) -> None:
        raise RuntimeError("boom")

    with pytest.raises(Retry):
        await queue.run_job({"job_id": "job-9", "job_try": 1}, _payload().to_wire(), {"maxAttempts": 2}, processor)

    entries = fake_redis.streams["ingest:events:failed"]
    assert len(entries) == 1
    event = FailureEvent.model_validate_json(entries[0][1]["event"])
    assert event.job_id == "job-9"
    assert event.max_attempts == 2


@pytest.mark.asyncio
async def test_delay_is_kept_when_priority_is_set(fake_redis) -> None:
    queue = JobQueue(fake_redis, make_settings())
    before_ms = time.time() * 1000
    job_id = await queue.enqueue("ingest", _payload(), priority=1, delay_ms=30000)

    assert fake_redis.jobs[job_id]["score"] - before_ms >= 29000
    counts = await queue.counts()
    assert (counts.waiting, counts.delayed) == (0, 1)


def test_validate_ingest_payload_rejects_long_titles() -> None:
    settings = make_settings(max_title_chars=5)
    with pytest.raises(PayloadValidationError, match="title is too long"):
        validate_ingest_payload(
            IngestPayload(workspace_id="ws1", documents=[IngestDocument(title="x" * 6, content="ok")]), settings
        )
    validate_ingest_payload(
        IngestPayload(workspace_id="ws1", documents=[IngestDocument(title="short", content="ok")]), settings
    )


@pytest.mark.asyncio
async def test_hung_job_times_out_into_a_retry(fake_redis) -> None:
    bus = _RecordingBus()
    queue = JobQueue(fake_redis, make_settings(ingest_job_timeout_s=0.05), events=bus)

    async def processor(payload: IngestPayload, job_id: str) -> None:
        await asyncio.sleep(10)

    with pytest.raises(Retry) as retry:
        await queue.run_job({"job_id": "job-1", "job_try": 1}, _payload().to_wire(), {"maxAttempts": 5}, processor)

    assert retry.value.defer_score == 2000
    assert len(bus.events) == 1
    assert bus.events[0].is_final is False
    assert classify_failure(bus.events[0].failed_reason) is FailureReason.TIMEOUT


@pytest.mark.asyncio
async def test_hung_final_attempt_is_reported_as_final(fake_redis) -> None:
    bus = _RecordingBus()
    queue = JobQueue(fake_redis, make_settings(ingest_job_timeout_s=0.05), events=bus)

    async def processor(payload: IngestPayload, job_id: str) -> None:
        await asyncio.sleep(10)

    with pytest.raises(TimeoutError):
        await queue.run_job({"job_id": "job-1", "job_try": 5}, _payload().to_wire(), {"maxAttempts": 5}, processor)

    assert [event.is_final for event in bus.events] == [True]
