"""
Alert Engine Configuration - fixed rule keys, severities and thresholds.

Thresholds are provisional defaults pending clinical sign-off. They are
constants rather than settings so that every worker evaluates the same rules.
"""

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class RuleKey(str, Enum):
    """Alert rule identifiers"""
    MOOD_DECLINE = "RULE-001"
    MISSED_CHECK_IN = "RULE-002"
    TRIGGER_ESCALATION = "RULE-003"
    SAFETY_SYMPTOM = "RULE-004"
    MEDICATION_ADHERENCE = "RULE-005"
    SLEEP_DISRUPTION = "RULE-006"
    EXERCISE_DECLINE = "RULE-007"
    JOURNAL_SENTIMENT = "RULE-008"


class AlertSeverity(str, Enum):
    """Alert severity levels, info < warning < critical"""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    """Projected from acknowledged_at / escalated_at / auto_resolved"""
    NEW = "new"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class AlertThresholds:
    """Rule thresholds"""

    # RULE-001: 7-day rolling mean vs 28-day baseline
    mood_rolling_days: int = 7
    mood_baseline_days: int = 28
    mood_decline_warning_delta: float = 2.5
    mood_decline_critical_delta: float = 3.5

    # RULE-002: consecutive days without a submitted entry
    missed_check_in_warning_days: int = 3
    missed_check_in_critical_days: int = 5
    missed_check_in_cap_days: int = 14

    # RULE-003: severity >= N on >= M distinct days inside an M-day window
    trigger_escalation_severity: int = 7
    trigger_escalation_days: int = 3

    # RULE-005
    medication_window_days: int = 7
    medication_missed_days: int = 3

    # RULE-006
    sleep_window_days: int = 5
    sleep_min_hours: float = 5.0

    # RULE-007
    exercise_window_days: int = 7

    # RULE-008
    journal_entry_limit: int = 3
    journal_max_tokens: int = 256


ALERT_THRESHOLDS = AlertThresholds()
