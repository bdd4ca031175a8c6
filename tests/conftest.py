"""
Pytest configuration for the rules engine tests
"""

import os
import sys
from datetime import date, datetime, time, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

# Add parent directory to path to import mindlog_rules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from mindlog_rules.database import Base, create_db_engine
from mindlog_rules.models import (
    DailyEntry,
    ExerciseLog,
    JournalEntry,
    MedicationAdherenceLog,
    Patient,
    PatientMedication,
    SleepLog,
    SymptomCatalogue,
    SymptomLog,
    TriggerCatalogue,
    TriggerLog,
    ValidatedAssessment,
)

AS_OF = date(2026, 3, 15)
PATIENT_ID = "patient-1"
ORG_ID = "org-1"


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio backend for async tests"""
    return 'asyncio'


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so worker threads see the same database"""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'rules.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(autoflush=False, bind=engine)
    engine.dispose()


class TimeSeriesSeeder:
    """Writes check-in data the way the ingestion service would"""

    def __init__(self, session_factory, patient_id: str = PATIENT_ID, org_id: str = ORG_ID):
        self.session_factory = session_factory
        self.patient_id = patient_id
        self.org_id = org_id

    def _add(self, obj):
        with self.session_factory() as session:
            session.add(obj)
            session.commit()
            return obj.id

    def patient(self, patient_id=None, org_id=None, status="active"):
        return self._add(Patient(
            id=patient_id or self.patient_id,
            organisation_id=org_id or self.org_id,
            status=status,
        ))

    def entry(self, day: date, mood=None, submitted=True, social_avoidance=False, patient_id=None):
        submitted_at = datetime.combine(day, time(20, 0), tzinfo=timezone.utc) if submitted else None
        return self._add(DailyEntry(
            patient_id=patient_id or self.patient_id,
            entry_date=day,
            mood_score=mood,
            submitted_at=submitted_at,
            social_avoidance=social_avoidance,
        ))

    def exercise(self, daily_entry_id: int, minutes: int):
        return self._add(ExerciseLog(daily_entry_id=daily_entry_id, duration_minutes=minutes))

    def sleep(self, day: date, hours: int, minutes: int = 0):
        return self._add(SleepLog(patient_id=self.patient_id, entry_date=day, hours=hours, minutes=minutes))

    def trigger(self, trigger_id: str, name: str):
        return self._add(TriggerCatalogue(id=trigger_id, name=name))

    def trigger_log(self, trigger_id: str, day: date, severity: int):
        return self._add(TriggerLog(patient_id=self.patient_id, trigger_id=trigger_id,
                                    entry_date=day, severity=severity))

    def medication(self, name: str, discontinued=False, show_in_app=True):
        discontinued_at = datetime(2026, 1, 1, tzinfo=timezone.utc) if discontinued else None
        return self._add(PatientMedication(patient_id=self.patient_id, name=name,
                                           discontinued_at=discontinued_at, show_in_app=show_in_app))

    def adherence(self, medication_id: int, day: date, taken: bool):
        return self._add(MedicationAdherenceLog(patient_medication_id=medication_id,
                                                entry_date=day, taken=taken))

    def journal(self, daily_entry_id: int, body: str):
        return self._add(JournalEntry(daily_entry_id=daily_entry_id, patient_id=self.patient_id, body=body))

    def assessment(self, scale: str, score: float, day: date, at: time = time(12, 0)):
        return self._add(ValidatedAssessment(
            patient_id=self.patient_id,
            scale=scale,
            score=score,
            completed_at=datetime.combine(day, at, tzinfo=timezone.utc),
        ))

    def symptom(self, symptom_id: str, name: str, is_safety_symptom=False):
        return self._add(SymptomCatalogue(id=symptom_id, name=name, is_safety_symptom=is_safety_symptom))

    def symptom_log(self, symptom_id: str, day: date, is_present=True):
        return self._add(SymptomLog(patient_id=self.patient_id, symptom_id=symptom_id,
                                    entry_date=day, is_present=is_present))

    def daily_series(self, moods, end: date = AS_OF, exercise_minutes=None):
        """
        One submitted entry per day ending at `end`; moods[0] is `end`.
        Returns entry ids in the same order.
        """
        ids = []
        for offset, mood in enumerate(moods):
            entry_id = self.entry(end - timedelta(days=offset), mood=mood)
            if exercise_minutes is not None:
                self.exercise(entry_id, exercise_minutes)
            ids.append(entry_id)
        return ids


@pytest.fixture
def seed(session_factory):
    seeder = TimeSeriesSeeder(session_factory)
    seeder.patient()
    return seeder
