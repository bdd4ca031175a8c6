from mindlog_rules.models.alert_models import ClinicalAlert
from mindlog_rules.models.timeseries_models import (
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

__all__ = [
    "ClinicalAlert",
    "DailyEntry",
    "ExerciseLog",
    "JournalEntry",
    "MedicationAdherenceLog",
    "Patient",
    "PatientMedication",
    "SleepLog",
    "SymptomCatalogue",
    "SymptomLog",
    "TriggerCatalogue",
    "TriggerLog",
    "ValidatedAssessment",
]
