"""
Alert Deduplicator & Store

Enforces at most one open (not resolved) alert per (patient, rule key).

The read check suppresses the common case of a repeated evaluation run.
The partial unique index uq_clinical_alerts_open_rule is the actual
enforcement: when two workers pass the read check at the same time, the
loser's insert fails inside a SAVEPOINT and is reported as suppressed.

Clinician status transitions (acknowledge / escalate / resolve) live here
too, since they are the only other writers of clinical_alerts.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mindlog_rules.core.error_handling import AlertNotFoundError, InvalidAlertTransition
from mindlog_rules.core.logging import log_audit
from mindlog_rules.models import ClinicalAlert
from .config_service import AlertStatus
from .evaluation_metrics import EvaluationMetrics
from .rule_engine import RuleCandidate

logger = logging.getLogger(__name__)


def alert_status(alert: ClinicalAlert) -> AlertStatus:
    """Status projection: resolved > escalated > acknowledged > new"""
    if alert.auto_resolved:
        return AlertStatus.RESOLVED
    if alert.escalated_at is not None:
        return AlertStatus.ESCALATED
    if alert.acknowledged_at is not None:
        return AlertStatus.ACKNOWLEDGED
    return AlertStatus.NEW


class AlertStore:
    """Persistence for clinical alerts"""

    def __init__(self, session_factory, metrics: Optional[EvaluationMetrics] = None):
        self.session_factory = session_factory
        self.metrics = metrics or EvaluationMetrics()

    @staticmethod
    def _find_open(session: Session, patient_id: str, rule_key: str) -> Optional[ClinicalAlert]:
        return session.query(ClinicalAlert).filter(
            ClinicalAlert.patient_id == patient_id,
            ClinicalAlert.rule_key == rule_key,
            ClinicalAlert.auto_resolved.is_(False),
        ).first()

    def create_if_absent(self, patient_id: str, org_id: str, candidate: RuleCandidate) -> Optional[str]:
        """
        Insert an alert for the candidate unless one is already open.

        Returns:
            New alert id, or None when suppressed
        """
        rule_key = candidate.rule_key.value
        with self.session_factory() as session:
            existing = self._find_open(session, patient_id, rule_key)
            if existing is not None:
                self._record_suppressed(patient_id, rule_key, existing.id)
                return None

            alert = ClinicalAlert(
                patient_id=patient_id,
                organisation_id=org_id,
                rule_key=rule_key,
                severity=candidate.severity.value,
                title=candidate.title,
                detail=candidate.detail,
            )
            try:
                with session.begin_nested():
                    session.add(alert)
            except IntegrityError:
                # Another worker inserted the open alert after our read check
                self._record_suppressed(patient_id, rule_key, None)
                return None
            session.commit()

            alert_id = alert.id
            self.metrics.record_alert_created(rule_key, candidate.severity.value)
            log_audit("alert_created", None, {
                "alert_id": alert_id,
                "patient_id": patient_id,
                "rule_key": rule_key,
                "severity": candidate.severity.value,
            })
            logger.info(f"Created {candidate.severity.value} alert {alert_id} ({rule_key}) for patient {patient_id}")
            return alert_id

    def _record_suppressed(self, patient_id: str, rule_key: str, open_alert_id: Optional[str]):
        self.metrics.record_alert_suppressed(rule_key)
        log_audit("alert_suppressed", None, {
            "patient_id": patient_id,
            "rule_key": rule_key,
            "open_alert_id": open_alert_id,
        })
        logger.debug(f"Suppressed {rule_key} for patient {patient_id}: open alert exists")

    def get_open_alert(self, patient_id: str, rule_key: str) -> Optional[ClinicalAlert]:
        with self.session_factory(expire_on_commit=False) as session:
            return self._find_open(session, patient_id, rule_key)

    def get(self, alert_id: str) -> ClinicalAlert:
        with self.session_factory(expire_on_commit=False) as session:
            alert = session.get(ClinicalAlert, alert_id)
            if alert is None:
                raise AlertNotFoundError(alert_id)
            return alert

    def _transition(self, alert_id: str, action: str, actor_id: Optional[str], apply) -> ClinicalAlert:
        with self.session_factory(expire_on_commit=False) as session:
            alert = session.get(ClinicalAlert, alert_id, with_for_update=True)
            if alert is None:
                raise AlertNotFoundError(alert_id)
            apply(alert, datetime.now(timezone.utc))
            session.commit()
            log_audit(f"alert_{action}", actor_id, {
                "alert_id": alert_id,
                "patient_id": alert.patient_id,
                "rule_key": alert.rule_key,
                "status": alert_status(alert).value,
            })
            return alert

    def acknowledge(self, alert_id: str, clinician_id: str, note: Optional[str] = None) -> ClinicalAlert:
        """Idempotent: the first acknowledgement (time, clinician, note) is kept"""
        def apply(alert: ClinicalAlert, now: datetime):
            if alert.auto_resolved:
                raise InvalidAlertTransition(alert_id, AlertStatus.RESOLVED.value, "acknowledge")
            if alert.acknowledged_at is not None:
                return
            alert.acknowledged_at = now
            alert.acknowledged_by = clinician_id
            alert.acknowledgement_note = note

        return self._transition(alert_id, "acknowledged", clinician_id, apply)

    def escalate(self, alert_id: str, to_clinician_id: str, by_clinician_id: Optional[str] = None) -> ClinicalAlert:
        def apply(alert: ClinicalAlert, now: datetime):
            if alert.auto_resolved:
                raise InvalidAlertTransition(alert_id, AlertStatus.RESOLVED.value, "escalate")
            alert.escalated_to = to_clinician_id
            alert.escalated_at = now
            if alert.acknowledged_at is None:
                alert.acknowledged_at = now
                alert.acknowledged_by = by_clinician_id

        return self._transition(alert_id, "escalated", by_clinician_id, apply)

    def resolve(self, alert_id: str, clinician_id: Optional[str] = None) -> ClinicalAlert:
        """Idempotent; frees the (patient, rule) slot for a new alert"""
        def apply(alert: ClinicalAlert, now: datetime):
            if alert.auto_resolved:
                return
            alert.auto_resolved = True
            alert.auto_resolved_at = now
            if alert.acknowledged_at is None:
                alert.acknowledged_at = now
                alert.acknowledged_by = clinician_id

        return self._transition(alert_id, "resolved", clinician_id, apply)
