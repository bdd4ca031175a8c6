"""
Rule-Based Alert Engine - deterministic clinical rules over patient time series.

Decision rules (each returns at most one candidate):
1. RULE-001 Mood decline: 7-day rolling mean vs 28-day baseline
2. RULE-002 Missed check-in: consecutive days without a submitted entry
3. RULE-003 Trigger escalation: high-severity trigger on consecutive days
5. RULE-005 Medication adherence: explicit "not taken" logs
6. RULE-006 Sleep disruption: short sleep on every day of the window
7. RULE-007 Exercise decline: no exercise on every submitted day
8. RULE-008 Journal sentiment: see journal_sentiment.py

RULE-004 (safety symptom) is raised by a database trigger the moment the
symptom is logged. This module only looks that alert up so it can be
re-broadcast.

Every window ends at as_of (inclusive) and never reads future rows.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import numpy as np
from sqlalchemy import func
from sqlalchemy.orm import Session

from mindlog_rules.models import (
    ClinicalAlert,
    DailyEntry,
    ExerciseLog,
    JournalEntry,
    MedicationAdherenceLog,
    PatientMedication,
    SleepLog,
    TriggerCatalogue,
    TriggerLog,
)
from .config_service import ALERT_THRESHOLDS, AlertSeverity, RuleKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleCandidate:
    """Alert proposed by a rule, before the dedup decision"""
    rule_key: RuleKey
    severity: AlertSeverity
    title: str
    detail: Dict[str, Any] = field(default_factory=dict)


def _window_start(as_of: date, days: int) -> date:
    """First day of an N-day window ending on as_of"""
    return as_of - timedelta(days=days - 1)


def evaluate_mood_decline(session: Session, patient_id: str, as_of: date) -> Optional[RuleCandidate]:
    t = ALERT_THRESHOLDS
    rows = session.query(DailyEntry.entry_date, DailyEntry.mood_score).filter(
        DailyEntry.patient_id == patient_id,
        DailyEntry.entry_date >= _window_start(as_of, t.mood_baseline_days),
        DailyEntry.entry_date <= as_of,
        DailyEntry.submitted_at.isnot(None),
        DailyEntry.mood_score.isnot(None),
    ).all()

    rolling_start = _window_start(as_of, t.mood_rolling_days)
    rolling = [r.mood_score for r in rows if r.entry_date >= rolling_start]
    baseline = [r.mood_score for r in rows]
    if not rolling or not baseline:
        return None

    avg_7d = round(float(np.mean(rolling)), 2)
    avg_28d = round(float(np.mean(baseline)), 2)
    delta = round(avg_28d - avg_7d, 2)  # positive means decline
    detail = {"avg_7d": avg_7d, "avg_28d": avg_28d, "delta": delta}

    if delta >= t.mood_decline_critical_delta:
        return RuleCandidate(RuleKey.MOOD_DECLINE, AlertSeverity.CRITICAL,
                             "Significant mood decline detected", detail)
    if delta >= t.mood_decline_warning_delta:
        return RuleCandidate(RuleKey.MOOD_DECLINE, AlertSeverity.WARNING,
                             "Mood decline detected", detail)
    return None


def count_consecutive_missed(session: Session, patient_id: str, as_of: date, cap: int) -> int:
    """Walk back from the day before as_of until a submitted entry is found"""
    first_day = as_of - timedelta(days=1)
    submitted = {
        row.entry_date for row in session.query(DailyEntry.entry_date).filter(
            DailyEntry.patient_id == patient_id,
            DailyEntry.entry_date >= as_of - timedelta(days=cap),
            DailyEntry.entry_date <= first_day,
            DailyEntry.submitted_at.isnot(None),
        )
    }
    missed = 0
    day = first_day
    while missed < cap and day not in submitted:
        missed += 1
        day -= timedelta(days=1)
    return missed


def evaluate_missed_check_in(session: Session, patient_id: str, as_of: date) -> Optional[RuleCandidate]:
    t = ALERT_THRESHOLDS
    missed = count_consecutive_missed(session, patient_id, as_of, t.missed_check_in_cap_days)
    detail = {"consecutive_missed": missed, "as_of": as_of.isoformat()}

    if missed >= t.missed_check_in_critical_days:
        severity = AlertSeverity.CRITICAL
    elif missed >= t.missed_check_in_warning_days:
        severity = AlertSeverity.WARNING
    else:
        return None
    return RuleCandidate(RuleKey.MISSED_CHECK_IN, severity, f"{missed} consecutive missed check-ins", detail)


def evaluate_trigger_escalation(session: Session, patient_id: str, as_of: date) -> Optional[RuleCandidate]:
    t = ALERT_THRESHOLDS
    rows = session.query(TriggerLog.trigger_id, TriggerCatalogue.name, TriggerLog.entry_date).join(
        TriggerCatalogue, TriggerCatalogue.id == TriggerLog.trigger_id
    ).filter(
        TriggerLog.patient_id == patient_id,
        TriggerLog.entry_date >= _window_start(as_of, t.trigger_escalation_days),
        TriggerLog.entry_date <= as_of,
        TriggerLog.severity >= t.trigger_escalation_severity,
    ).all()

    days_by_trigger: Dict[Tuple[str, str], set] = defaultdict(set)
    for trigger_id, name, entry_date in rows:
        days_by_trigger[(trigger_id, name)].add(entry_date)

    qualifying = [
        (trigger_id, name, len(days))
        for (trigger_id, name), days in days_by_trigger.items()
        if len(days) >= t.trigger_escalation_days
    ]
    if not qualifying:
        return None

    # Most qualifying days wins, then name for a stable choice
    trigger_id, name, high_days = sorted(qualifying, key=lambda q: (-q[2], q[1]))[0]
    return RuleCandidate(
        RuleKey.TRIGGER_ESCALATION,
        AlertSeverity.WARNING,
        f"High-severity trigger for {high_days} days: {name}",
        {
            "trigger_id": trigger_id,
            "trigger_name": name,
            "high_days": high_days,
            "threshold_severity": t.trigger_escalation_severity,
        },
    )


def evaluate_medication_adherence(session: Session, patient_id: str, as_of: date) -> Optional[RuleCandidate]:
    t = ALERT_THRESHOLDS
    rows = session.query(MedicationAdherenceLog.entry_date, PatientMedication.name).join(
        PatientMedication, PatientMedication.id == MedicationAdherenceLog.patient_medication_id
    ).filter(
        PatientMedication.patient_id == patient_id,
        PatientMedication.discontinued_at.is_(None),
        PatientMedication.show_in_app.is_(True),
        MedicationAdherenceLog.taken.is_(False),
        MedicationAdherenceLog.entry_date >= _window_start(as_of, t.medication_window_days),
        MedicationAdherenceLog.entry_date <= as_of,
    ).all()

    missed_days = len({r.entry_date for r in rows})
    if missed_days < t.medication_missed_days:
        return None
    return RuleCandidate(
        RuleKey.MEDICATION_ADHERENCE,
        AlertSeverity.WARNING,
        f"Medication not taken for {missed_days} days",
        {"missed_days": missed_days, "medications": sorted({r.name for r in rows})},
    )


def evaluate_sleep_disruption(session: Session, patient_id: str, as_of: date) -> Optional[RuleCandidate]:
    t = ALERT_THRESHOLDS
    rows = session.query(SleepLog.entry_date, SleepLog.hours, SleepLog.minutes).filter(
        SleepLog.patient_id == patient_id,
        SleepLog.entry_date >= _window_start(as_of, t.sleep_window_days),
        SleepLog.entry_date <= as_of,
    ).all()

    hours_by_day: Dict[date, float] = defaultdict(float)
    for entry_date, hours, minutes in rows:
        hours_by_day[entry_date] += (hours or 0) + (minutes or 0) / 60.0

    poor = [h for h in hours_by_day.values() if h < t.sleep_min_hours]
    # A day with no sleep log does not qualify
    if len(poor) < t.sleep_window_days:
        return None
    return RuleCandidate(
        RuleKey.SLEEP_DISRUPTION,
        AlertSeverity.WARNING,
        f"Poor sleep for {t.sleep_window_days} consecutive days",
        {
            "poor_days": len(poor),
            "avg_hours": round(float(np.mean(poor)), 2),
            "threshold_hours": t.sleep_min_hours,
        },
    )


def evaluate_exercise_decline(session: Session, patient_id: str, as_of: date) -> Optional[RuleCandidate]:
    t = ALERT_THRESHOLDS
    rows = session.query(
        DailyEntry.id,
        func.coalesce(func.sum(ExerciseLog.duration_minutes), 0).label("total_minutes"),
    ).outerjoin(
        ExerciseLog, ExerciseLog.daily_entry_id == DailyEntry.id
    ).filter(
        DailyEntry.patient_id == patient_id,
        DailyEntry.entry_date >= _window_start(as_of, t.exercise_window_days),
        DailyEntry.entry_date <= as_of,
        DailyEntry.submitted_at.isnot(None),
    ).group_by(DailyEntry.id).all()

    inactive_days = sum(1 for r in rows if not r.total_minutes)
    if inactive_days < t.exercise_window_days:
        return None
    return RuleCandidate(
        RuleKey.EXERCISE_DECLINE,
        AlertSeverity.INFO,
        f"No exercise logged in {t.exercise_window_days} days",
        {"inactive_days": inactive_days},
    )


def fetch_recent_journal_bodies(session: Session, patient_id: str, as_of: date,
                                limit: int = ALERT_THRESHOLDS.journal_entry_limit) -> List[str]:
    """Most recent journal bodies of submitted entries on or before as_of, newest first"""
    rows = session.query(JournalEntry.body).join(
        DailyEntry, DailyEntry.id == JournalEntry.daily_entry_id
    ).filter(
        DailyEntry.patient_id == patient_id,
        DailyEntry.entry_date <= as_of,
        DailyEntry.submitted_at.isnot(None),
    ).order_by(DailyEntry.entry_date.desc(), JournalEntry.id.desc()).limit(limit).all()
    return [r.body for r in rows]


def clinic_day_bounds(as_of: date, tz_name: str) -> Tuple[datetime, datetime]:
    """UTC [start, end) of the as_of calendar day in the clinic timezone"""
    tz = ZoneInfo(tz_name)
    start = datetime.combine(as_of, time.min, tzinfo=tz)
    end = datetime.combine(as_of + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def find_safety_alert(session: Session, patient_id: str, as_of: date, tz_name: str) -> Optional[ClinicalAlert]:
    """
    Latest critical RULE-004 alert created on the as_of day (clinic timezone).

    Raises on query failure: the orchestrator lets this propagate so the
    job is retried rather than silently skipping the safety re-broadcast.
    """
    start, end = clinic_day_bounds(as_of, tz_name)
    return session.query(ClinicalAlert).filter(
        ClinicalAlert.patient_id == patient_id,
        ClinicalAlert.rule_key == RuleKey.SAFETY_SYMPTOM.value,
        ClinicalAlert.severity == AlertSeverity.CRITICAL.value,
        ClinicalAlert.created_at >= start,
        ClinicalAlert.created_at < end,
    ).order_by(ClinicalAlert.created_at.desc()).first()


RuleEvaluator = Callable[[Session, str, date], Optional[RuleCandidate]]

# Synchronous decision rules; journal sentiment is dispatched separately
DATABASE_RULES: List[Tuple[RuleKey, RuleEvaluator]] = [
    (RuleKey.MOOD_DECLINE, evaluate_mood_decline),
    (RuleKey.MISSED_CHECK_IN, evaluate_missed_check_in),
    (RuleKey.TRIGGER_ESCALATION, evaluate_trigger_escalation),
    (RuleKey.MEDICATION_ADHERENCE, evaluate_medication_adherence),
    (RuleKey.SLEEP_DISRUPTION, evaluate_sleep_disruption),
    (RuleKey.EXERCISE_DECLINE, evaluate_exercise_decline),
]
