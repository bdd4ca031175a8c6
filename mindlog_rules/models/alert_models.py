"""
Clinical Alert Model
One row per alert raised by the rules engine (or by the safety-symptom
database trigger for RULE-004).

Status is never stored: it is projected from acknowledged_at, escalated_at
and auto_resolved. Rows are never deleted.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Boolean, JSON, Text, ForeignKey, Index, text

from mindlog_rules.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class ClinicalAlert(Base):
    __tablename__ = "clinical_alerts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    organisation_id = Column(String, nullable=False, index=True)

    rule_key = Column(String, nullable=False)  # "RULE-001" .. "RULE-008"
    severity = Column(String, nullable=False)  # "info", "warning", "critical"
    title = Column(Text, nullable=False)
    detail = Column(JSON)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    # Clinician actions
    acknowledged_at = Column(DateTime(timezone=True))
    acknowledged_by = Column(String)
    acknowledgement_note = Column(Text)
    escalated_to = Column(String)
    escalated_at = Column(DateTime(timezone=True))
    auto_resolved = Column(Boolean, nullable=False, default=False)
    auto_resolved_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_clinical_alerts_patient_created', 'patient_id', 'created_at'),
        # At most one open alert per (patient, rule). RULE-004 rows come from the
        # safety-symptom trigger, one per qualifying log, so they are excluded.
        Index(
            'uq_clinical_alerts_open_rule',
            'patient_id', 'rule_key',
            unique=True,
            postgresql_where=text("NOT auto_resolved AND rule_key <> 'RULE-004'"),
            sqlite_where=text("NOT auto_resolved AND rule_key <> 'RULE-004'"),
        ),
    )
