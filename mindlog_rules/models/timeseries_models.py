"""
Patient Time-Series Models
Tables written by the check-in ingestion layer and read by the rules engine.

The rules engine only reads these, except for the risk snapshot columns
on Patient which are overwritten on every risk scoring run.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, Date, Boolean, JSON, Text, ForeignKey, Index

from mindlog_rules.database import Base


class Patient(Base):
    __tablename__ = "patients"

    id = Column(String, primary_key=True, index=True)
    organisation_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="active")  # "active", "inactive", "discharged"

    # Current risk snapshot (latest value overwrites)
    risk_score = Column(Integer)
    risk_band = Column(String)  # "low", "moderate", "high", "critical"
    risk_score_factors = Column(JSON)  # Ordered list of factor dicts
    risk_score_updated_at = Column(DateTime(timezone=True))


class DailyEntry(Base):
    """One check-in per patient per calendar day"""
    __tablename__ = "daily_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    entry_date = Column(Date, nullable=False)
    mood_score = Column(Integer)  # 1-10
    social_avoidance = Column(Boolean, default=False)
    submitted_at = Column(DateTime(timezone=True))  # NULL while still a draft

    __table_args__ = (
        Index('idx_daily_entries_patient_date', 'patient_id', 'entry_date', unique=True),
    )


class SleepLog(Base):
    __tablename__ = "sleep_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    entry_date = Column(Date, nullable=False)
    hours = Column(Integer, default=0)
    minutes = Column(Integer, default=0)


class ExerciseLog(Base):
    __tablename__ = "exercise_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    daily_entry_id = Column(Integer, ForeignKey("daily_entries.id"), nullable=False, index=True)
    duration_minutes = Column(Integer, default=0)


class TriggerCatalogue(Base):
    __tablename__ = "trigger_catalogue"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)


class TriggerLog(Base):
    __tablename__ = "trigger_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    trigger_id = Column(String, ForeignKey("trigger_catalogue.id"), nullable=False)
    entry_date = Column(Date, nullable=False)
    severity = Column(Integer)  # 1-10


class SymptomCatalogue(Base):
    __tablename__ = "symptom_catalogue"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    is_safety_symptom = Column(Boolean, default=False)


class SymptomLog(Base):
    __tablename__ = "symptom_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    symptom_id = Column(String, ForeignKey("symptom_catalogue.id"), nullable=False)
    daily_entry_id = Column(Integer, ForeignKey("daily_entries.id"))
    entry_date = Column(Date, nullable=False)
    is_present = Column(Boolean, default=True)


class PatientMedication(Base):
    __tablename__ = "patient_medications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    discontinued_at = Column(DateTime(timezone=True))
    show_in_app = Column(Boolean, default=True)


class MedicationAdherenceLog(Base):
    __tablename__ = "medication_adherence_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_medication_id = Column(Integer, ForeignKey("patient_medications.id"), nullable=False, index=True)
    entry_date = Column(Date, nullable=False)
    taken = Column(Boolean, nullable=False)


class JournalEntry(Base):
    __tablename__ = "journal_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    daily_entry_id = Column(Integer, ForeignKey("daily_entries.id"), nullable=False, index=True)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    body = Column(Text, nullable=False)


class ValidatedAssessment(Base):
    """Completed validated scales (PHQ-9, C-SSRS, ASRM, ...)"""
    __tablename__ = "validated_assessments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    scale = Column(String, nullable=False)  # "PHQ-9", "C-SSRS", "ASRM", ...
    score = Column(Float, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=False)
