"""
Risk Scoring Engine
===================

Composite clinical risk score (0-100) from seven fixed-weight factors:

    CSSRS_ELEVATED               35
    PHQ9_SEVERE                  20
    LOW_MOOD_STREAK              15
    MISSED_CHECKINS              10
    ASRM_ELEVATED                10
    MED_NONADHERENCE              5
    SOCIAL_WITHDRAWAL_ANHEDONIA   5

Weights sum to exactly 100. Score is the capped sum of fired weights; band
is a step function of score. Each factor keeps the raw value that drove it
so the clinician UI can explain the score.

Thresholds are provisional defaults pending clinical sign-off.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from mindlog_rules.core.logging import log_audit
from mindlog_rules.models import (
    DailyEntry,
    MedicationAdherenceLog,
    Patient,
    PatientMedication,
    SymptomCatalogue,
    SymptomLog,
    ValidatedAssessment,
)
from mindlog_rules.services.alert_engine.evaluation_metrics import EvaluationMetrics
from mindlog_rules.services.alert_engine.rule_engine import clinic_day_bounds

logger = logging.getLogger(__name__)

MAX_SCORE = 100

ANHEDONIA_SYMPTOM_TERMS = ("anhedonia", "loss of interest")


@dataclass
class RiskFactor:
    rule: str
    label: str
    weight: int
    fired: bool
    value: Any = None


@dataclass
class RiskScoreSnapshot:
    patient_id: str
    score: int
    band: str
    factors: List[RiskFactor]
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def factors_payload(self) -> List[Dict[str, Any]]:
        return [asdict(f) for f in self.factors]


def score_to_band(score: int) -> str:
    """Map risk score to band"""
    if score >= 75:
        return 'critical'
    elif score >= 50:
        return 'high'
    elif score >= 25:
        return 'moderate'
    else:
        return 'low'


def score_from_factors(factors: List[RiskFactor]) -> int:
    return min(MAX_SCORE, sum(f.weight for f in factors if f.fired))


def _clinic_window(as_of: date, days: int, tz_name: str) -> Tuple[datetime, datetime]:
    """UTC [start, end) covering the N clinic-calendar days ending on as_of"""
    start, _ = clinic_day_bounds(as_of - timedelta(days=days - 1), tz_name)
    _, end = clinic_day_bounds(as_of, tz_name)
    return start, end


def _assessment_scores(session: Session, patient_id: str, scale: str, as_of: date, days: int,
                       tz_name: str) -> List[float]:
    start, end = _clinic_window(as_of, days, tz_name)
    rows = session.query(ValidatedAssessment.score).filter(
        ValidatedAssessment.patient_id == patient_id,
        ValidatedAssessment.scale == scale,
        ValidatedAssessment.completed_at >= start,
        ValidatedAssessment.completed_at < end,
    ).all()
    return [r.score for r in rows]


# ---------------------------------------------------------------------------
# Factor evaluators: (session, patient_id, as_of, tz_name) -> (fired, raw value)
# tz_name is the clinic timezone that defines the as_of calendar day
# ---------------------------------------------------------------------------

def cssrs_elevated(session: Session, patient_id: str, as_of: date, tz_name: str) -> Tuple[bool, Any]:
    """Any C-SSRS score >= 1 in the last 30 days"""
    scores = _assessment_scores(session, patient_id, "C-SSRS", as_of, 30, tz_name)
    max_score = max(scores) if scores else None
    return (max_score is not None and max_score >= 1), {"max_score": max_score}


def phq9_severe(session: Session, patient_id: str, as_of: date, tz_name: str) -> Tuple[bool, Any]:
    """Most recent PHQ-9 >= 20"""
    _, end = clinic_day_bounds(as_of, tz_name)
    latest = session.query(ValidatedAssessment.score).filter(
        ValidatedAssessment.patient_id == patient_id,
        ValidatedAssessment.scale == "PHQ-9",
        ValidatedAssessment.completed_at < end,
    ).order_by(ValidatedAssessment.completed_at.desc()).first()
    score = latest.score if latest else None
    return (score is not None and score >= 20), {"latest": score}


def low_mood_streak(session: Session, patient_id: str, as_of: date, tz_name: str) -> Tuple[bool, Any]:
    """Mood <= 3 on at least 3 of the last 5 submitted check-ins"""
    rows = session.query(DailyEntry.mood_score).filter(
        DailyEntry.patient_id == patient_id,
        DailyEntry.entry_date <= as_of,
        DailyEntry.submitted_at.isnot(None),
        DailyEntry.mood_score.isnot(None),
    ).order_by(DailyEntry.entry_date.desc()).limit(5).all()
    moods = [r.mood_score for r in rows]
    low_days = sum(1 for m in moods if m <= 3)
    return low_days >= 3, {"low_days": low_days, "recent_moods": moods}


def missed_checkins(session: Session, patient_id: str, as_of: date, tz_name: str) -> Tuple[bool, Any]:
    """At least 5 of the last 14 days without a submitted check-in"""
    submitted = session.query(func.count(func.distinct(DailyEntry.entry_date))).filter(
        DailyEntry.patient_id == patient_id,
        DailyEntry.entry_date > as_of - timedelta(days=14),
        DailyEntry.entry_date <= as_of,
        DailyEntry.submitted_at.isnot(None),
    ).scalar() or 0
    missed = max(0, 14 - submitted)
    return missed >= 5, {"missed_days": missed}


def asrm_elevated(session: Session, patient_id: str, as_of: date, tz_name: str) -> Tuple[bool, Any]:
    scores = _assessment_scores(session, patient_id, "ASRM", as_of, 14, tz_name)
    max_score = max(scores) if scores else None
    return (max_score is not None and max_score >= 6), {"max_score": max_score}


def med_nonadherence(session: Session, patient_id: str, as_of: date, tz_name: str) -> Tuple[bool, Any]:
    rows = session.query(MedicationAdherenceLog.entry_date).join(
        PatientMedication, PatientMedication.id == MedicationAdherenceLog.patient_medication_id
    ).filter(
        PatientMedication.patient_id == patient_id,
        PatientMedication.discontinued_at.is_(None),
        MedicationAdherenceLog.taken.is_(False),
        MedicationAdherenceLog.entry_date > as_of - timedelta(days=7),
        MedicationAdherenceLog.entry_date <= as_of,
    ).distinct().all()
    missed = len(rows)
    return missed >= 3, {"missed_days": missed}


def social_withdrawal_anhedonia(session: Session, patient_id: str, as_of: date, tz_name: str) -> Tuple[bool, Any]:
    """Social avoidance in 7 days together with anhedonia in 14 days"""
    avoidance_days = session.query(func.count(DailyEntry.id)).filter(
        DailyEntry.patient_id == patient_id,
        DailyEntry.entry_date > as_of - timedelta(days=7),
        DailyEntry.entry_date <= as_of,
        DailyEntry.submitted_at.isnot(None),
        DailyEntry.social_avoidance.is_(True),
    ).scalar() or 0

    symptom_names = session.query(SymptomCatalogue.name).join(
        SymptomLog, SymptomLog.symptom_id == SymptomCatalogue.id
    ).filter(
        SymptomLog.patient_id == patient_id,
        SymptomLog.is_present.is_(True),
        SymptomLog.entry_date > as_of - timedelta(days=14),
        SymptomLog.entry_date <= as_of,
    ).all()
    anhedonia = any(
        term in row.name.lower() for row in symptom_names for term in ANHEDONIA_SYMPTOM_TERMS
    )
    return (avoidance_days > 0 and anhedonia), {"avoidance_days": avoidance_days, "anhedonia": anhedonia}


@dataclass(frozen=True)
class FactorDefinition:
    rule: str
    label: str
    weight: int
    evaluate: Callable[[Session, str, date, str], Tuple[bool, Any]]


RISK_FACTORS: List[FactorDefinition] = [
    FactorDefinition("CSSRS_ELEVATED", "Suicidal ideation (C-SSRS)", 35, cssrs_elevated),
    FactorDefinition("PHQ9_SEVERE", "Severe depression (PHQ-9)", 20, phq9_severe),
    FactorDefinition("LOW_MOOD_STREAK", "Sustained low mood", 15, low_mood_streak),
    FactorDefinition("MISSED_CHECKINS", "Missed check-ins", 10, missed_checkins),
    FactorDefinition("ASRM_ELEVATED", "Mania screen (ASRM)", 10, asrm_elevated),
    FactorDefinition("MED_NONADHERENCE", "Medication non-adherence", 5, med_nonadherence),
    FactorDefinition("SOCIAL_WITHDRAWAL_ANHEDONIA", "Social avoidance with anhedonia", 5, social_withdrawal_anhedonia),
]


class RiskAggregator:
    """
    Runs the factor evaluators concurrently and overwrites the patient's
    current risk snapshot.

    A factor that raises is recorded as not fired (fail-closed for the score).
    """

    def __init__(self, session_factory, metrics: Optional[EvaluationMetrics] = None,
                 factors: Optional[List[FactorDefinition]] = None, clinic_timezone: str = "America/New_York"):
        self.session_factory = session_factory
        self.clinic_timezone = clinic_timezone
        self.metrics = metrics or EvaluationMetrics()
        self.factors = factors if factors is not None else RISK_FACTORS

    async def _run_factor(self, definition: FactorDefinition, patient_id: str, as_of: date) -> RiskFactor:
        def _call():
            with self.session_factory() as session:
                return definition.evaluate(session, patient_id, as_of, self.clinic_timezone)

        try:
            fired, value = await asyncio.to_thread(_call)
        except Exception:
            logger.exception(f"Risk factor {definition.rule} failed for patient {patient_id}")
            self.metrics.risk_factor_failures.inc({"rule": definition.rule})
            return RiskFactor(definition.rule, definition.label, definition.weight, False, None)
        return RiskFactor(definition.rule, definition.label, definition.weight, bool(fired), value)

    async def compute(self, patient_id: str, as_of: date) -> RiskScoreSnapshot:
        factors = await asyncio.gather(*[
            self._run_factor(definition, patient_id, as_of) for definition in self.factors
        ])
        factors = list(factors)
        score = score_from_factors(factors)
        return RiskScoreSnapshot(
            patient_id=patient_id,
            score=score,
            band=score_to_band(score),
            factors=factors,
        )

    def persist_snapshot(self, snapshot: RiskScoreSnapshot):
        """Overwrite the patient's current score; history is kept elsewhere"""
        with self.session_factory() as session:
            updated = session.query(Patient).filter(Patient.id == snapshot.patient_id).update({
                Patient.risk_score: snapshot.score,
                Patient.risk_band: snapshot.band,
                Patient.risk_score_factors: snapshot.factors_payload(),
                Patient.risk_score_updated_at: snapshot.computed_at,
            }, synchronize_session=False)
            session.commit()

        if not updated:
            logger.warning(f"Risk snapshot for unknown patient {snapshot.patient_id} not persisted")
            return
        log_audit("risk_score_updated", None, {
            "patient_id": snapshot.patient_id,
            "score": snapshot.score,
            "band": snapshot.band,
            "fired": [f.rule for f in snapshot.factors if f.fired],
        })

    async def compute_and_persist(self, patient_id: str, as_of: date) -> RiskScoreSnapshot:
        snapshot = await self.compute(patient_id, as_of)
        await asyncio.to_thread(self.persist_snapshot, snapshot)
        logger.info(f"Risk score for patient {patient_id}: {snapshot.score} ({snapshot.band})")
        return snapshot
