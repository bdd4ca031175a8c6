"""
Rules Engine Background Worker - Redis job stream, worker pool and nightly batch.

Producers:
- Check-in submission calls enqueue_immediate() for (patient, entry date)
- NightlyScheduler (APScheduler cron, 02:00 clinic time) enqueues one job
  per recently active patient, as of yesterday

Consumer:
- RulesWorker reads jobs through a consumer group with at most
  RULES_WORKER_CONCURRENCY in flight, runs the evaluation orchestrator then
  the risk aggregator, and retries a failed unit of work with exponential
  backoff. After the last attempt the job is parked in the failed hash.
- An entry is acked only after its job completed or was handed to the
  delayed/failed sets. Entries left pending by a crashed or cancelled worker
  are reclaimed with XAUTOCLAIM once idle for STALE_CLAIM_IDLE_MS.

Redis keys:
    mindlog:rules:stream      stream of ready job payloads (group rules_workers)
    mindlog:rules:delayed     sorted set of retry payloads scored by due time
    mindlog:rules:failed      hash job_id -> payload with sanitized reason
    mindlog:rules:job:{id}    dedup marker for a job id
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

import redis.asyncio as redis
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from redis.exceptions import ResponseError

from mindlog_rules.config import Settings, get_settings
from mindlog_rules.core.error_handling import ErrorSanitizer, JobPayloadError
from mindlog_rules.core.logging import SecureLogger, configure_logging, log_audit
from mindlog_rules.database import create_session_factory
from mindlog_rules.models import DailyEntry, Patient
from mindlog_rules.services.risk_scoring_engine import RiskAggregator
from .alert_store import AlertStore
from .evaluation_metrics import EvaluationMetrics
from .journal_sentiment import build_sentiment_analyzer
from .notification_service import AlertPublisher
from .orchestrator import EvaluationOrchestrator, EvaluationRequest, TriggeredBy

logger = logging.getLogger(__name__)

QUEUE_PREFIX = "mindlog:rules"
CONSUMER_GROUP = "rules_workers"
JOB_MARKER_TTL_SECONDS = 7 * 24 * 3600
STALE_CLAIM_IDLE_MS = 5 * 60 * 1000
ACTIVE_PATIENT_LOOKBACK_DAYS = 90
NIGHTLY_JOB_ID = "nightly_rules_batch"


@dataclass
class RulesJob:
    """One (patient, entry date) unit of work"""
    job_id: str
    patient_id: str
    org_id: str
    entry_date: date
    triggered_by: TriggeredBy = TriggeredBy.IMMEDIATE
    attempts: int = 0
    failed_reason: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['entry_date'] = self.entry_date.isoformat()
        data['triggered_by'] = self.triggered_by.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RulesJob':
        try:
            return cls(
                job_id=data['job_id'],
                patient_id=data['patient_id'],
                org_id=data['org_id'],
                entry_date=date.fromisoformat(data['entry_date']),
                triggered_by=TriggeredBy(data.get('triggered_by', TriggeredBy.IMMEDIATE.value)),
                attempts=int(data.get('attempts', 0)),
                failed_reason=data.get('failed_reason'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise JobPayloadError(f"Invalid rules job payload: {type(e).__name__}") from e

    @classmethod
    def from_json(cls, payload) -> 'RulesJob':
        if isinstance(payload, bytes):
            payload = payload.decode()
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise JobPayloadError("Rules job payload is not valid JSON") from e
        if not isinstance(data, dict):
            raise JobPayloadError("Rules job payload must be an object")
        return cls.from_dict(data)

    def to_request(self) -> EvaluationRequest:
        return EvaluationRequest(
            patient_id=self.patient_id,
            org_id=self.org_id,
            as_of=self.entry_date,
            triggered_by=self.triggered_by,
        )


class RulesQueue:
    """Redis stream queue with job-id dedup, delayed retries and a failed set"""

    def __init__(self, redis_client, prefix: str = QUEUE_PREFIX, group: str = CONSUMER_GROUP,
                 consumer_name: Optional[str] = None, claim_idle_ms: int = STALE_CLAIM_IDLE_MS):
        self.redis = redis_client
        self.stream_key = f"{prefix}:stream"
        self.delayed_key = f"{prefix}:delayed"
        self.failed_key = f"{prefix}:failed"
        self.marker_prefix = f"{prefix}:job:"
        self.group = group
        self.consumer_name = consumer_name or f"consumer_{uuid.uuid4().hex[:8]}"
        self.claim_idle_ms = claim_idle_ms

    async def ensure_group(self):
        """Create the consumer group (and stream) if it doesn't exist"""
        try:
            await self.redis.xgroup_create(self.stream_key, self.group, id='0', mkstream=True)
            logger.info(f"Created consumer group: {self.group}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.info(f"Consumer group {self.group} already exists")

    async def _push(self, payload: str):
        await self.redis.xadd(self.stream_key, {"payload": payload})

    async def enqueue(self, job: RulesJob) -> bool:
        """
        Add a job unless one with the same id was already queued.

        Returns:
            False when the job id is a duplicate
        """
        marker = f"{self.marker_prefix}{job.job_id}"
        added = await self.redis.set(marker, "1", nx=True, ex=JOB_MARKER_TTL_SECONDS)
        if not added:
            logger.debug(f"Job {job.job_id} already queued, skipping")
            return False
        try:
            await self._push(job.to_json())
        except Exception:
            # Free the id so the producer can enqueue it again
            await self.redis.delete(marker)
            raise
        return True

    async def claim_stale(self) -> Optional[Tuple[str, Any]]:
        """Take over one entry another consumer read but never acked"""
        result = await self.redis.xautoclaim(
            self.stream_key,
            self.group,
            self.consumer_name,
            min_idle_time=self.claim_idle_ms,
            count=1,
        )
        if result and len(result) > 1:
            for entry_id, data in result[1]:
                if data and "payload" in data:
                    logger.warning(f"Reclaimed stale rules job entry {entry_id}")
                    return entry_id, data["payload"]
                # Entry was trimmed from the stream; drop it from the pending list
                await self.redis.xack(self.stream_key, self.group, entry_id)
        return None

    async def dequeue(self, timeout: int = 5) -> Optional[Tuple[str, Any]]:
        """
        Next (entry_id, payload), stale entries first, blocking up to
        timeout seconds for a new one.
        """
        stale = await self.claim_stale()
        if stale is not None:
            return stale

        entries = await self.redis.xreadgroup(
            groupname=self.group,
            consumername=self.consumer_name,
            streams={self.stream_key: '>'},
            count=1,
            block=timeout * 1000,
        )
        if entries:
            for stream_name, stream_entries in entries:
                for entry_id, data in stream_entries:
                    return entry_id, data.get("payload")
        return None

    async def ack(self, entry_id: str):
        await self.redis.xack(self.stream_key, self.group, entry_id)
        await self.redis.xdel(self.stream_key, entry_id)

    async def schedule_retry(self, job: RulesJob, delay_seconds: float):
        await self.redis.zadd(self.delayed_key, {job.to_json(): time.time() + delay_seconds})

    async def promote_due(self, now: Optional[float] = None) -> int:
        """Move retries whose backoff has elapsed onto the stream"""
        now = time.time() if now is None else now
        due = await self.redis.zrangebyscore(self.delayed_key, 0, now)
        promoted = 0
        for payload in due:
            # zrem wins only for one worker when several promote at once
            if await self.redis.zrem(self.delayed_key, payload):
                await self._push(payload)
                promoted += 1
        return promoted

    async def mark_failed(self, job: RulesJob):
        await self.redis.hset(self.failed_key, job.job_id, job.to_json())

    async def failed_jobs(self) -> List[RulesJob]:
        raw = await self.redis.hgetall(self.failed_key)
        return [RulesJob.from_json(payload) for payload in raw.values()]

    async def retry_failed(self, job_id: str) -> bool:
        """Manual re-trigger of a failed job with its attempt count reset"""
        payload = await self.redis.hget(self.failed_key, job_id)
        if payload is None:
            return False
        job = RulesJob.from_json(payload)
        job.attempts = 0
        job.failed_reason = None
        await self.redis.hdel(self.failed_key, job_id)
        await self._push(job.to_json())
        return True


async def enqueue_immediate(queue: RulesQueue, patient_id: str, org_id: str, entry_date: date) -> RulesJob:
    """Called by the check-in submission path after an entry is saved"""
    job = RulesJob(
        job_id=f"immediate:{uuid.uuid4()}",
        patient_id=patient_id,
        org_id=org_id,
        entry_date=entry_date,
        triggered_by=TriggeredBy.IMMEDIATE,
    )
    await queue.enqueue(job)
    return job


class RulesWorker:
    """Consumes rules jobs with bounded concurrency and retry/backoff"""

    def __init__(
        self,
        queue: RulesQueue,
        orchestrator: EvaluationOrchestrator,
        risk_aggregator: Optional[RiskAggregator] = None,
        metrics: Optional[EvaluationMetrics] = None,
        concurrency: int = 5,
        attempts: int = 3,
        backoff_seconds: float = 5.0,
        poll_timeout: int = 5,
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self.risk_aggregator = risk_aggregator
        self.metrics = metrics or EvaluationMetrics()
        self.concurrency = concurrency
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.poll_timeout = poll_timeout
        self.running = False
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: Set[asyncio.Task] = set()

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)"""
        return self.backoff_seconds * (2 ** (attempt - 1))

    async def run_job(self, job: RulesJob):
        """One attempt at the unit of work; raises on failure"""
        await self.orchestrator.evaluate(job.to_request())
        if self.risk_aggregator is not None:
            await self.risk_aggregator.compute_and_persist(job.patient_id, job.entry_date)

    async def process_job(self, job: RulesJob) -> bool:
        """
        Run a job, scheduling a retry or parking it as failed on error.

        Returns:
            True if the job completed
        """
        self.metrics.jobs_in_flight.inc()
        try:
            await self.run_job(job)
        except Exception as e:
            job.attempts += 1
            job.failed_reason = ErrorSanitizer.sanitize_error(e, context="rules_job")
            if job.attempts < self.attempts:
                delay = self.backoff_delay(job.attempts)
                logger.warning(
                    f"Job {job.job_id} failed (attempt {job.attempts}/{self.attempts}), "
                    f"retrying in {delay:.0f}s: {type(e).__name__}"
                )
                await self.queue.schedule_retry(job, delay)
                self.metrics.record_job("retried")
            else:
                logger.error(f"Job {job.job_id} failed after {job.attempts} attempts", exc_info=True)
                await self.queue.mark_failed(job)
                self.metrics.record_job("failed")
                log_audit("rules_job_failed", None, {
                    "job_id": job.job_id,
                    "patient_id": job.patient_id,
                    "entry_date": job.entry_date.isoformat(),
                    "reason": job.failed_reason,
                })
            return False
        finally:
            self.metrics.jobs_in_flight.dec()

        self.metrics.record_job("completed")
        logger.info(f"Job {job.job_id} completed - patient {job.patient_id} / {job.entry_date}")
        return True

    async def _process_entry(self, entry_id: str, payload):
        """Ack once the job finished or was handed to the delayed/failed sets"""
        try:
            try:
                job = RulesJob.from_json(payload)
            except JobPayloadError as e:
                logger.error(f"Dropping undecodable rules job {entry_id}: {e}")
                self.metrics.record_job("invalid")
            else:
                await self.process_job(job)
            await self.queue.ack(entry_id)
        except Exception as e:
            SecureLogger.log(logger, logging.ERROR, f"Rules job entry {entry_id} left pending for reclaim: {e}")
        finally:
            self._semaphore.release()

    async def start(self):
        """Main consume loop; returns after stop()"""
        self.running = True
        logger.info(f"Rules worker started (concurrency={self.concurrency}, attempts={self.attempts})")
        while self.running:
            try:
                await self.queue.promote_due()
                await self._semaphore.acquire()
                try:
                    entry = await self.queue.dequeue(timeout=self.poll_timeout)
                except Exception:
                    self._semaphore.release()
                    raise
                if entry is None:
                    self._semaphore.release()
                    continue
                entry_id, payload = entry
                task = asyncio.create_task(self._process_entry(entry_id, payload))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            except asyncio.CancelledError:
                break
            except Exception as e:
                SecureLogger.log(logger, logging.ERROR, f"Rules worker loop error: {e}")
                await asyncio.sleep(5)  # Back off on error

    async def stop(self):
        """Stop consuming and wait for in-flight jobs"""
        self.running = False
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Rules worker stopped")


class NightlyScheduler:
    """Fans out one nightly_batch job per recently active patient"""

    def __init__(self, queue: RulesQueue, session_factory, clinic_timezone: str = "America/New_York",
                 run_hour: int = 2):
        self.queue = queue
        self.session_factory = session_factory
        self.clinic_timezone = clinic_timezone
        self.run_hour = run_hour
        self.scheduler = AsyncIOScheduler(timezone=clinic_timezone)

    def _active_patients(self, today: date) -> List[tuple]:
        since = today - timedelta(days=ACTIVE_PATIENT_LOOKBACK_DAYS)
        with self.session_factory() as session:
            rows = session.query(Patient.id, Patient.organisation_id).join(
                DailyEntry, DailyEntry.patient_id == Patient.id
            ).filter(
                Patient.status == "active",
                DailyEntry.entry_date >= since,
            ).distinct().order_by(Patient.id).all()
            return [(r.id, r.organisation_id) for r in rows]

    async def run_once(self, today: Optional[date] = None) -> int:
        """
        Enqueue the nightly batch for `today` (clinic timezone).

        Returns:
            Number of jobs newly enqueued
        """
        if today is None:
            today = datetime.now(ZoneInfo(self.clinic_timezone)).date()
        as_of = today - timedelta(days=1)
        patients = await asyncio.to_thread(self._active_patients, today)
        logger.info(f"[nightly] Processing {len(patients)} patients for {as_of}")

        enqueued = 0
        for patient_id, org_id in patients:
            job = RulesJob(
                job_id=f"nightly:{patient_id}:{as_of.isoformat()}",
                patient_id=patient_id,
                org_id=org_id,
                entry_date=as_of,
                triggered_by=TriggeredBy.NIGHTLY_BATCH,
            )
            if await self.queue.enqueue(job):
                enqueued += 1

        logger.info(f"[nightly] Enqueued {enqueued} rule evaluation jobs")
        return enqueued

    def trigger(self) -> CronTrigger:
        return CronTrigger(hour=self.run_hour, minute=0, timezone=self.clinic_timezone)

    async def _run_scheduled(self):
        try:
            await self.run_once()
        except Exception as e:
            SecureLogger.log(logger, logging.ERROR, f"[nightly] Scheduled batch failed: {e}")

    def start(self):
        """Register the nightly job; must be called with the event loop running"""
        if not self.scheduler.running:
            self.scheduler.add_job(
                self._run_scheduled,
                self.trigger(),
                id=NIGHTLY_JOB_ID,
                replace_existing=True,
                name='Nightly Rules Batch',
                coalesce=True,
                max_instances=1,
            )
            self.scheduler.start()
            logger.info(f"[nightly] Scheduled daily at {self.run_hour:02d}:00 {self.clinic_timezone}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)


@dataclass
class WorkerServices:
    """Everything the worker process constructs at start-up"""
    settings: Settings
    redis_client: Any
    metrics: EvaluationMetrics
    queue: RulesQueue
    worker: RulesWorker
    scheduler: NightlyScheduler


def build_worker_services(settings: Optional[Settings] = None, redis_client=None,
                          session_factory=None) -> WorkerServices:
    """Wire the service graph explicitly; nothing is held in module globals"""
    settings = settings or get_settings()
    session_factory = session_factory or create_session_factory(settings)
    redis_client = redis_client or redis.from_url(settings.REDIS_URL, decode_responses=True)
    metrics = EvaluationMetrics()

    orchestrator = EvaluationOrchestrator(
        session_factory=session_factory,
        store=AlertStore(session_factory, metrics),
        publisher=AlertPublisher(redis_client, metrics),
        sentiment_analyzer=build_sentiment_analyzer(settings, metrics),
        metrics=metrics,
        clinic_timezone=settings.CLINIC_TIMEZONE,
    )
    queue = RulesQueue(redis_client)
    worker = RulesWorker(
        queue,
        orchestrator,
        risk_aggregator=RiskAggregator(session_factory, metrics, clinic_timezone=settings.CLINIC_TIMEZONE),
        metrics=metrics,
        concurrency=settings.RULES_WORKER_CONCURRENCY,
        attempts=settings.RULES_JOB_ATTEMPTS,
        backoff_seconds=settings.RULES_JOB_BACKOFF_SECONDS,
    )
    scheduler = NightlyScheduler(queue, session_factory, clinic_timezone=settings.CLINIC_TIMEZONE)
    return WorkerServices(settings, redis_client, metrics, queue, worker, scheduler)


async def run_worker(services: WorkerServices):
    await services.queue.ensure_group()
    parked = await services.queue.failed_jobs()
    if parked:
        logger.warning(
            f"{len(parked)} rules jobs parked in {services.queue.failed_key}: "
            f"{', '.join(sorted(job.job_id for job in parked))}"
        )

    services.scheduler.start()
    try:
        await services.worker.start()
    finally:
        services.scheduler.stop()
        await services.worker.stop()
        await services.redis_client.aclose()
        logger.info(f"Final metrics: {json.dumps(services.metrics.snapshot(), default=str)}")


def main():
    configure_logging()
    services = build_worker_services()
    try:
        asyncio.run(run_worker(services))
    except KeyboardInterrupt:
        logger.info("Rules worker interrupted")
