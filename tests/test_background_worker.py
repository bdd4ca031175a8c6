"""
Tests for the rules job stream, worker retry/backoff and nightly scheduler
"""

import json
import logging
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ResponseError

from mindlog_rules.config import Settings
from mindlog_rules.core.error_handling import JobPayloadError
from mindlog_rules.services.alert_engine.background_worker import (
    JOB_MARKER_TTL_SECONDS,
    NIGHTLY_JOB_ID,
    STALE_CLAIM_IDLE_MS,
    NightlyScheduler,
    RulesJob,
    RulesQueue,
    RulesWorker,
    WorkerServices,
    build_worker_services,
    enqueue_immediate,
    run_worker,
)
from mindlog_rules.services.alert_engine.evaluation_metrics import EvaluationMetrics
from mindlog_rules.services.alert_engine.orchestrator import TriggeredBy

from conftest import AS_OF, ORG_ID, PATIENT_ID, TimeSeriesSeeder

STREAM = "mindlog:rules:stream"
GROUP = "rules_workers"


def make_job(**overrides):
    fields = dict(job_id="immediate:abc", patient_id=PATIENT_ID, org_id=ORG_ID, entry_date=AS_OF)
    fields.update(overrides)
    return RulesJob(**fields)


def pushed_payloads(redis_client):
    return [c.args[1]["payload"] for c in redis_client.xadd.await_args_list]


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.xgroup_create = AsyncMock(return_value=True)
    client.xadd = AsyncMock(return_value="1-0")
    client.xreadgroup = AsyncMock(return_value=[])
    client.xautoclaim = AsyncMock(return_value=["0-0", [], []])
    client.xack = AsyncMock(return_value=1)
    client.xdel = AsyncMock(return_value=1)
    client.zadd = AsyncMock(return_value=1)
    client.zrangebyscore = AsyncMock(return_value=[])
    client.zrem = AsyncMock(return_value=1)
    client.hset = AsyncMock(return_value=1)
    client.hget = AsyncMock(return_value=None)
    client.hdel = AsyncMock(return_value=1)
    client.hgetall = AsyncMock(return_value={})
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def queue(redis_client):
    return RulesQueue(redis_client, consumer_name="consumer_test")



@pytest.fixture
def metrics():
    return EvaluationMetrics()


def make_worker(queue, metrics, orchestrator=None, risk_aggregator=None):
    orchestrator = orchestrator or MagicMock(evaluate=AsyncMock())
    return RulesWorker(queue, orchestrator, risk_aggregator=risk_aggregator, metrics=metrics,
                       attempts=3, backoff_seconds=5.0)


class TestRulesJob:

    def test_json_round_trip_keeps_types(self):
        job = make_job(triggered_by=TriggeredBy.NIGHTLY_BATCH, attempts=2)
        restored = RulesJob.from_json(job.to_json().encode())

        assert restored == job
        assert restored.to_request().as_of == AS_OF
        assert restored.to_request().triggered_by == TriggeredBy.NIGHTLY_BATCH

    @pytest.mark.parametrize("payload", [
        "not json",
        "[1, 2]",
        json.dumps({"job_id": "x", "patient_id": "p"}),
        json.dumps({"job_id": "x", "patient_id": "p", "org_id": "o", "entry_date": "yesterday"}),
        json.dumps({"job_id": "x", "patient_id": "p", "org_id": "o", "entry_date": "2026-03-15",
                    "triggered_by": "manual"}),
    ])
    def test_invalid_payloads_raise(self, payload):
        with pytest.raises(JobPayloadError):
            RulesJob.from_json(payload)


class TestRulesQueue:

    @pytest.mark.asyncio
    async def test_enqueue_sets_marker_and_adds_to_stream(self, queue, redis_client):
        job = make_job()
        assert await queue.enqueue(job) is True

        redis_client.set.assert_awaited_once_with(
            "mindlog:rules:job:immediate:abc", "1", nx=True, ex=JOB_MARKER_TTL_SECONDS
        )
        redis_client.xadd.assert_awaited_once_with(STREAM, {"payload": job.to_json()})

    @pytest.mark.asyncio
    async def test_duplicate_job_id_is_not_pushed(self, queue, redis_client):
        redis_client.set.side_effect = [True, None]

        assert await queue.enqueue(make_job()) is True
        assert await queue.enqueue(make_job()) is False
        assert redis_client.xadd.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_push_releases_marker(self, queue, redis_client):
        redis_client.xadd.side_effect = [ConnectionError("redis gone"), "1-0"]

        with pytest.raises(ConnectionError):
            await queue.enqueue(make_job())
        redis_client.delete.assert_awaited_once_with("mindlog:rules:job:immediate:abc")

        # The same id can be enqueued again once the marker is gone
        assert await queue.enqueue(make_job()) is True

    @pytest.mark.asyncio
    async def test_enqueue_immediate_uses_unique_ids(self, queue):
        first = await enqueue_immediate(queue, PATIENT_ID, ORG_ID, AS_OF)
        second = await enqueue_immediate(queue, PATIENT_ID, ORG_ID, AS_OF)

        assert first.job_id.startswith("immediate:")
        assert first.job_id != second.job_id
        assert first.triggered_by == TriggeredBy.IMMEDIATE

    @pytest.mark.asyncio
    async def test_ensure_group_creates_stream(self, queue, redis_client):
        await queue.ensure_group()
        redis_client.xgroup_create.assert_awaited_once_with(STREAM, GROUP, id='0', mkstream=True)

    @pytest.mark.asyncio
    async def test_ensure_group_tolerates_existing_group(self, queue, redis_client):
        redis_client.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")
        await queue.ensure_group()

        redis_client.xgroup_create.side_effect = ResponseError("WRONGTYPE Operation against a key")
        with pytest.raises(ResponseError):
            await queue.ensure_group()

    @pytest.mark.asyncio
    async def test_dequeue_reads_new_entry_through_group(self, queue, redis_client):
        redis_client.xreadgroup.return_value = [[STREAM, [("1700000000000-0", {"payload": "p"})]]]

        assert await queue.dequeue(timeout=1) == ("1700000000000-0", "p")
        redis_client.xreadgroup.assert_awaited_once_with(
            groupname=GROUP,
            consumername="consumer_test",
            streams={STREAM: '>'},
            count=1,
            block=1000,
        )

    @pytest.mark.asyncio
    async def test_dequeue_times_out(self, queue):
        assert await queue.dequeue(timeout=1) is None

    @pytest.mark.asyncio
    async def test_dequeue_reclaims_stale_entry_first(self, queue, redis_client):
        # Read by a worker that crashed before acking
        redis_client.xautoclaim.return_value = ["0-0", [("5-0", {"payload": "p"})], []]

        assert await queue.dequeue(timeout=1) == ("5-0", "p")
        redis_client.xautoclaim.assert_awaited_once_with(
            STREAM, GROUP, "consumer_test", min_idle_time=STALE_CLAIM_IDLE_MS, count=1
        )
        redis_client.xreadgroup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trimmed_stale_entry_is_acked_and_skipped(self, queue, redis_client):
        redis_client.xautoclaim.return_value = ["0-0", [("6-0", None)], []]

        assert await queue.dequeue(timeout=1) is None
        redis_client.xack.assert_awaited_once_with(STREAM, GROUP, "6-0")

    @pytest.mark.asyncio
    async def test_ack_removes_entry(self, queue, redis_client):
        await queue.ack("1-0")
        redis_client.xack.assert_awaited_once_with(STREAM, GROUP, "1-0")
        redis_client.xdel.assert_awaited_once_with(STREAM, "1-0")

    @pytest.mark.asyncio
    async def test_schedule_retry_scores_by_due_time(self, queue, redis_client):
        job = make_job(attempts=1)
        with patch("mindlog_rules.services.alert_engine.background_worker.time.time", return_value=1000.0):
            await queue.schedule_retry(job, 10.0)

        redis_client.zadd.assert_awaited_once_with("mindlog:rules:delayed", {job.to_json(): 1010.0})

    @pytest.mark.asyncio
    async def test_promote_due_moves_only_payloads_it_removed(self, queue, redis_client):
        redis_client.zrangebyscore.return_value = ["a", "b"]
        # Another worker already promoted "b"
        redis_client.zrem.side_effect = [1, 0]

        promoted = await queue.promote_due(now=2000.0)

        assert promoted == 1
        redis_client.zrangebyscore.assert_awaited_once_with("mindlog:rules:delayed", 0, 2000.0)
        assert pushed_payloads(redis_client) == ["a"]

    @pytest.mark.asyncio
    async def test_failed_jobs_lists_parked_jobs(self, queue, redis_client):
        parked = make_job(attempts=3, failed_reason={"error": "boom"})
        redis_client.hgetall.return_value = {parked.job_id: parked.to_json()}

        assert await queue.failed_jobs() == [parked]

    @pytest.mark.asyncio
    async def test_retry_failed_resets_attempts(self, queue, redis_client):
        parked = make_job(attempts=3, failed_reason={"error": "boom"})
        redis_client.hget.return_value = parked.to_json()

        assert await queue.retry_failed(parked.job_id) is True

        pushed = RulesJob.from_json(pushed_payloads(redis_client)[0])
        assert pushed.attempts == 0
        assert pushed.failed_reason is None
        redis_client.hdel.assert_awaited_once_with("mindlog:rules:failed", parked.job_id)

    @pytest.mark.asyncio
    async def test_retry_unknown_failed_job(self, queue):
        assert await queue.retry_failed("missing") is False


class TestRulesWorker:

    def test_backoff_is_exponential(self, queue, metrics):
        worker = make_worker(queue, metrics)
        assert [worker.backoff_delay(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]

    @pytest.mark.asyncio
    async def test_success_runs_orchestrator_then_risk_score(self, queue, metrics):
        calls = []
        orchestrator = MagicMock(evaluate=AsyncMock(side_effect=lambda req: calls.append("evaluate")))
        aggregator = MagicMock(compute_and_persist=AsyncMock(side_effect=lambda *a: calls.append("risk")))
        worker = make_worker(queue, metrics, orchestrator, aggregator)

        assert await worker.process_job(make_job()) is True

        assert calls == ["evaluate", "risk"]
        aggregator.compute_and_persist.assert_awaited_once_with(PATIENT_ID, AS_OF)
        request = orchestrator.evaluate.await_args.args[0]
        assert request.patient_id == PATIENT_ID
        assert request.as_of == AS_OF
        assert metrics.jobs.get({"outcome": "completed"}) == 1
        assert metrics.jobs_in_flight.get() == 0

    @pytest.mark.asyncio
    async def test_failure_schedules_retry_with_backoff(self, queue, redis_client, metrics):
        orchestrator = MagicMock(evaluate=AsyncMock(side_effect=ConnectionError("db down")))
        worker = make_worker(queue, metrics, orchestrator)
        job = make_job()

        with patch.object(queue, "schedule_retry", AsyncMock()) as schedule_retry:
            assert await worker.process_job(job) is False
            assert await worker.process_job(job) is False

        delays = [c.args[1] for c in schedule_retry.await_args_list]
        assert delays == [5.0, 10.0]
        assert job.attempts == 2
        assert job.failed_reason["type"] == "ConnectionError"
        assert metrics.jobs.get({"outcome": "retried"}) == 2
        redis_client.hset.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_last_attempt_parks_job_as_failed(self, queue, redis_client, metrics):
        orchestrator = MagicMock(evaluate=AsyncMock(side_effect=RuntimeError("still broken")))
        worker = make_worker(queue, metrics, orchestrator)
        job = make_job(attempts=2)

        assert await worker.process_job(job) is False

        redis_client.zadd.assert_not_awaited()
        key, job_id, payload = redis_client.hset.await_args.args
        assert key == "mindlog:rules:failed"
        assert job_id == job.job_id
        parked = RulesJob.from_json(payload)
        assert parked.attempts == 3
        assert parked.failed_reason["type"] == "RuntimeError"
        assert metrics.jobs.get({"outcome": "failed"}) == 1

    @pytest.mark.asyncio
    async def test_risk_score_failure_fails_the_job(self, queue, metrics):
        aggregator = MagicMock(compute_and_persist=AsyncMock(side_effect=RuntimeError("write failed")))
        worker = make_worker(queue, metrics, risk_aggregator=aggregator)

        with patch.object(queue, "schedule_retry", AsyncMock()) as schedule_retry:
            assert await worker.process_job(make_job()) is False
        schedule_retry.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_entry_is_acked_after_job_completes(self, queue, redis_client, metrics):
        worker = RulesWorker(queue, MagicMock(evaluate=AsyncMock()), metrics=metrics, concurrency=1)
        await worker._semaphore.acquire()

        await worker._process_entry("1-0", make_job().to_json())

        worker.orchestrator.evaluate.assert_awaited_once()
        redis_client.xack.assert_awaited_once_with(STREAM, GROUP, "1-0")
        assert not worker._semaphore.locked()

    @pytest.mark.asyncio
    async def test_retried_job_acks_original_entry(self, queue, redis_client, metrics):
        orchestrator = MagicMock(evaluate=AsyncMock(side_effect=ConnectionError("db down")))
        worker = RulesWorker(queue, orchestrator, metrics=metrics, concurrency=1)
        await worker._semaphore.acquire()

        await worker._process_entry("1-0", make_job().to_json())

        redis_client.zadd.assert_awaited_once()
        redis_client.xack.assert_awaited_once_with(STREAM, GROUP, "1-0")

    @pytest.mark.asyncio
    async def test_entry_left_pending_when_retry_cannot_be_recorded(self, queue, redis_client, metrics):
        orchestrator = MagicMock(evaluate=AsyncMock(side_effect=ConnectionError("db down")))
        redis_client.zadd.side_effect = ConnectionError("redis gone")
        worker = RulesWorker(queue, orchestrator, metrics=metrics, concurrency=1)
        await worker._semaphore.acquire()

        await worker._process_entry("1-0", make_job().to_json())

        # Reclaimed later by XAUTOCLAIM
        redis_client.xack.assert_not_awaited()
        assert not worker._semaphore.locked()

    @pytest.mark.asyncio
    async def test_undecodable_payload_is_dropped(self, queue, redis_client, metrics):
        worker = RulesWorker(queue, MagicMock(evaluate=AsyncMock()), metrics=metrics, concurrency=1)
        await worker._semaphore.acquire()

        await worker._process_entry("2-0", "{not json")

        assert metrics.jobs.get({"outcome": "invalid"}) == 1
        worker.orchestrator.evaluate.assert_not_awaited()
        redis_client.xack.assert_awaited_once_with(STREAM, GROUP, "2-0")
        # Slot is released for the next job
        assert not worker._semaphore.locked()


class TestNightlyScheduler:

    @pytest.mark.asyncio
    async def test_enqueues_active_patients_as_of_yesterday(self, session_factory, seed, queue, redis_client):
        today = date(2026, 3, 16)
        seed.entry(date(2026, 3, 10), mood=6)
        other = TimeSeriesSeeder(session_factory, patient_id="patient-2", org_id="org-2")
        other.patient()
        other.entry(date(2026, 3, 1), mood=6)
        # Discharged and long-inactive patients are skipped
        discharged = TimeSeriesSeeder(session_factory, patient_id="patient-3")
        discharged.patient(status="discharged")
        discharged.entry(date(2026, 3, 10), mood=6)
        dormant = TimeSeriesSeeder(session_factory, patient_id="patient-4")
        dormant.patient()
        dormant.entry(date(2025, 11, 1), mood=6)

        scheduler = NightlyScheduler(queue, session_factory)
        enqueued = await scheduler.run_once(today=today)

        assert enqueued == 2
        jobs = [RulesJob.from_json(payload) for payload in pushed_payloads(redis_client)]
        assert [j.job_id for j in jobs] == [
            "nightly:patient-1:2026-03-15",
            "nightly:patient-2:2026-03-15",
        ]
        assert {j.org_id for j in jobs} == {ORG_ID, "org-2"}
        assert all(j.triggered_by == TriggeredBy.NIGHTLY_BATCH for j in jobs)
        assert all(j.entry_date == AS_OF for j in jobs)

    @pytest.mark.asyncio
    async def test_rerun_same_night_enqueues_nothing(self, session_factory, seed, queue, redis_client):
        seed.entry(AS_OF, mood=6)
        redis_client.set.side_effect = [True, None]
        scheduler = NightlyScheduler(queue, session_factory)

        assert await scheduler.run_once(today=date(2026, 3, 16)) == 1
        assert await scheduler.run_once(today=date(2026, 3, 16)) == 0

    @pytest.mark.parametrize("now,first,second", [
        # 23:00 EDT on 15 March
        (datetime(2026, 3, 16, 3, 0, tzinfo=timezone.utc),
         datetime(2026, 3, 16, 6, 0, tzinfo=timezone.utc),
         datetime(2026, 3, 17, 6, 0, tzinfo=timezone.utc)),
        # 23:00 EDT on 31 October; clocks fall back at 02:00 that night
        (datetime(2026, 11, 1, 3, 0, tzinfo=timezone.utc),
         datetime(2026, 11, 1, 7, 0, tzinfo=timezone.utc),
         datetime(2026, 11, 2, 7, 0, tzinfo=timezone.utc)),
    ])
    def test_fires_once_a_night_at_two_am_clinic_time(self, queue, now, first, second):
        scheduler = NightlyScheduler(queue, session_factory=None, clinic_timezone="America/New_York")
        trigger = scheduler.trigger()

        fire = trigger.get_next_fire_time(None, now)
        following = trigger.get_next_fire_time(fire, fire)

        assert fire == first
        assert following == second
        assert following - fire >= timedelta(hours=23)

    @pytest.mark.asyncio
    async def test_start_registers_cron_job(self, queue):
        scheduler = NightlyScheduler(queue, session_factory=None, clinic_timezone="Europe/London")
        scheduler.start()
        try:
            job = scheduler.scheduler.get_job(NIGHTLY_JOB_ID)
            assert job is not None
            assert str(job.trigger.timezone) == "Europe/London"
            assert str(job.trigger.fields[job.trigger.FIELD_NAMES.index("hour")]) == "2"
        finally:
            scheduler.stop()
        assert not scheduler.scheduler.running

    @pytest.mark.asyncio
    async def test_scheduled_run_failure_is_logged(self, queue, caplog):
        scheduler = NightlyScheduler(queue, session_factory=None)
        with patch.object(scheduler, "run_once", AsyncMock(side_effect=RuntimeError("db down"))):
            with caplog.at_level(logging.ERROR):
                await scheduler._run_scheduled()
        assert "Scheduled batch failed" in caplog.text


class TestRunWorker:

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self, queue, redis_client, metrics, caplog):
        parked = make_job(job_id="nightly:patient-1:2026-03-14", attempts=3)
        redis_client.hgetall.return_value = {parked.job_id: parked.to_json()}
        worker = MagicMock(start=AsyncMock(), stop=AsyncMock())
        scheduler = MagicMock()
        services = WorkerServices(MagicMock(), redis_client, metrics, queue, worker, scheduler)

        with caplog.at_level(logging.WARNING):
            await run_worker(services)

        redis_client.xgroup_create.assert_awaited_once()
        assert "1 rules jobs parked" in caplog.text
        assert parked.job_id in caplog.text
        scheduler.start.assert_called_once()
        scheduler.stop.assert_called_once()
        worker.stop.assert_awaited_once()
        redis_client.aclose.assert_awaited_once()

    def test_services_share_clinic_timezone(self, session_factory, redis_client):
        settings = Settings(_env_file=None, CLINIC_TIMEZONE="Europe/London")

        services = build_worker_services(settings, redis_client=redis_client, session_factory=session_factory)

        assert services.worker.risk_aggregator.clinic_timezone == "Europe/London"
        assert services.worker.orchestrator.clinic_timezone == "Europe/London"
        assert services.scheduler.clinic_timezone == "Europe/London"
