"""
Evaluation Orchestrator - one (patient, as-of date) unit of work.

1. Re-broadcast today's safety-symptom alert (RULE-004) if one exists
2. Fan out the seven decision rules concurrently, each fail-open
3. Fan in, then dedup/persist each candidate and broadcast new alerts

Rules never write; only step 3 touches clinical_alerts.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Awaitable, List, Optional, Sequence, Tuple

from mindlog_rules.core.error_handling import EvaluatorError
from .alert_store import AlertStore
from .config_service import RuleKey
from .evaluation_metrics import EvaluationMetrics
from .journal_sentiment import evaluate_journal_sentiment
from .notification_service import AlertEvent, AlertPublisher
from .rule_engine import DATABASE_RULES, RuleCandidate, RuleEvaluator, find_safety_alert

logger = logging.getLogger(__name__)


class TriggeredBy(str, Enum):
    IMMEDIATE = "immediate"
    NIGHTLY_BATCH = "nightly_batch"


@dataclass
class EvaluationRequest:
    patient_id: str
    org_id: str
    as_of: date
    triggered_by: TriggeredBy = TriggeredBy.IMMEDIATE


@dataclass
class EvaluationResult:
    patient_id: str
    as_of: date
    created_alert_ids: List[str] = field(default_factory=list)
    suppressed_rules: List[str] = field(default_factory=list)
    failed_rules: List[str] = field(default_factory=list)
    safety_rebroadcast: bool = False


class EvaluationOrchestrator:
    """Runs every rule for one patient and drives persistence and broadcast"""

    def __init__(
        self,
        session_factory,
        store: AlertStore,
        publisher: AlertPublisher,
        sentiment_analyzer,
        metrics: Optional[EvaluationMetrics] = None,
        clinic_timezone: str = "America/New_York",
        rules: Sequence[Tuple[RuleKey, RuleEvaluator]] = tuple(DATABASE_RULES),
    ):
        self.session_factory = session_factory
        self.store = store
        self.publisher = publisher
        self.sentiment_analyzer = sentiment_analyzer
        self.metrics = metrics or EvaluationMetrics()
        self.clinic_timezone = clinic_timezone
        self.rules = list(rules)

    async def evaluate(self, request: EvaluationRequest) -> EvaluationResult:
        started = time.perf_counter()
        result = EvaluationResult(patient_id=request.patient_id, as_of=request.as_of)

        # Lookup failures propagate so the job is retried
        result.safety_rebroadcast = await self._rebroadcast_safety_alert(request)

        candidates = await self._run_rules(request, result)

        for candidate in candidates:
            alert_id = await asyncio.to_thread(
                self.store.create_if_absent, request.patient_id, request.org_id, candidate
            )
            if alert_id is None:
                result.suppressed_rules.append(candidate.rule_key.value)
                continue
            result.created_alert_ids.append(alert_id)
            await self.publisher.publish_alert(request.org_id, AlertEvent(
                alertId=alert_id,
                severity=candidate.severity.value,
                title=candidate.title,
                ruleKey=candidate.rule_key.value,
                patientId=request.patient_id,
            ))

        elapsed_ms = (time.perf_counter() - started) * 1000
        self.metrics.evaluation_latency_ms.observe(elapsed_ms)
        logger.info(
            f"Evaluated patient {request.patient_id} as of {request.as_of} "
            f"({request.triggered_by.value}): {len(result.created_alert_ids)} created, "
            f"{len(result.suppressed_rules)} suppressed, {len(result.failed_rules)} failed "
            f"in {elapsed_ms:.0f}ms"
        )
        return result

    async def _rebroadcast_safety_alert(self, request: EvaluationRequest) -> bool:
        def _lookup():
            with self.session_factory() as session:
                alert = find_safety_alert(session, request.patient_id, request.as_of, self.clinic_timezone)
                if alert is None:
                    return None
                return AlertEvent(
                    alertId=alert.id,
                    severity=alert.severity,
                    title=alert.title,
                    ruleKey=alert.rule_key,
                    patientId=request.patient_id,
                )

        event = await asyncio.to_thread(_lookup)
        if event is None:
            return False
        return await self.publisher.publish_alert(request.org_id, event)

    async def _run_rules(self, request: EvaluationRequest, result: EvaluationResult) -> List[RuleCandidate]:
        branches = [
            self._guarded(rule_key, self._run_database_rule(rule_key, evaluator, request), result)
            for rule_key, evaluator in self.rules
        ]
        branches.append(self._guarded(
            RuleKey.JOURNAL_SENTIMENT,
            evaluate_journal_sentiment(
                self.sentiment_analyzer, self.session_factory, request.patient_id, request.as_of
            ),
            result,
        ))
        outcomes = await asyncio.gather(*branches)
        return [c for c in outcomes if c is not None]

    async def _run_database_rule(self, rule_key: RuleKey, evaluator: RuleEvaluator,
                                 request: EvaluationRequest) -> Optional[RuleCandidate]:
        def _call():
            with self.session_factory() as session:
                return evaluator(session, request.patient_id, request.as_of)

        candidate = await asyncio.to_thread(_call)
        if candidate is not None and not isinstance(candidate, RuleCandidate):
            raise EvaluatorError(rule_key.value, f"returned {type(candidate).__name__}, expected RuleCandidate")
        return candidate

    async def _guarded(self, rule_key: RuleKey, branch: Awaitable[Optional[RuleCandidate]],
                       result: EvaluationResult) -> Optional[RuleCandidate]:
        """Fail-open: an evaluator error counts as no candidate"""
        try:
            return await branch
        except Exception:
            logger.exception(f"Rule {rule_key.value} failed for patient {result.patient_id}; treating as no signal")
            self.metrics.record_evaluator_failure(rule_key.value)
            result.failed_rules.append(rule_key.value)
            return None
