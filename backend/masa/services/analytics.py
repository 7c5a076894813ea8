"""
Assessment analytics - per-patient summaries, score series and progress trends.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

from ..models.assessment import Assessment
from ..models.patient import Patient
from . import scoring


@dataclass
class PatientSummary:
    patient: Patient
    assessments: List[Assessment]
    total_assessments: int
    latest_assessment: Optional[Assessment]
    average_score: Optional[int]  # None when the patient has no assessments


@dataclass
class SeverityHistoryEntry:
    date: date
    total_score: int
    severity: scoring.Severity
    label: str


@dataclass
class PatientProgress:
    patient: Patient
    total_assessments: int
    first_assessment_date: Optional[date]
    last_assessment_date: Optional[date]
    average_score: Optional[int]
    trend: scoring.Trend
    series: List[scoring.ScorePoint] = field(default_factory=list)
    severity_history: List[SeverityHistoryEntry] = field(default_factory=list)


class AnalyticsService:
    """
    Derives dashboard figures from records already read from a backend.
    Nothing here is stored; every figure is recomputed per request.
    """

    def summarize_patients(
        self, patients: List[Patient], assessments: List[Assessment]
    ) -> List[PatientSummary]:
        """Join each patient with its assessments (newest first) and aggregate their scores."""
        by_patient: Dict[str, List[Assessment]] = defaultdict(list)
        for assessment in assessments:
            by_patient[assessment.patient_id].append(assessment)

        summaries = []
        for patient in patients:
            owned = sorted(by_patient.get(patient.id, []), key=lambda a: a.saved_date, reverse=True)
            summaries.append(
                PatientSummary(
                    patient=patient,
                    assessments=owned,
                    total_assessments=len(owned),
                    latest_assessment=owned[0] if owned else None,
                    average_score=scoring.average_score([a.total_score for a in owned]),
                )
            )
        return summaries

    def score_series(self, assessments: List[Assessment]) -> List[scoring.ScorePoint]:
        """Oldest first by assessment date; saves on the same day keep save order."""
        ordered = sorted(assessments, key=lambda a: (a.effective_date, a.saved_date))
        return [
            scoring.ScorePoint(date=a.effective_date, total_score=a.total_score, severity=a.severity)
            for a in ordered
        ]

    def patient_progress(self, patient: Patient, assessments: List[Assessment]) -> PatientProgress:
        series = self.score_series([a for a in assessments if a.patient_id == patient.id])
        scores = [point.total_score for point in series]
        return PatientProgress(
            patient=patient,
            total_assessments=len(series),
            first_assessment_date=series[0].date if series else None,
            last_assessment_date=series[-1].date if series else None,
            average_score=scoring.average_score(scores),
            trend=scoring.trend(scores),
            series=series,
            severity_history=[
                SeverityHistoryEntry(
                    date=point.date,
                    total_score=point.total_score,
                    severity=point.severity,
                    label=point.severity.label,
                )
                for point in series
            ],
        )


analytics_service = AnalyticsService()
