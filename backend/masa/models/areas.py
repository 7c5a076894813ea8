"""
The 24 fixed MASA assessment areas and the maximum grade of each.
Maxima sum to 200, the best possible total.
"""
from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class AssessmentArea:
    index: int
    title: str
    max_grade: int


_AREAS = [
    (1, "Alertness", 10),
    (2, "Co-operation", 10),
    (3, "Auditory comprehension", 10),
    (4, "Respiration", 10),
    (5, "Respiratory rate for swallow", 5),
    (6, "Dysphasia", 5),
    (7, "Dyspraxia", 5),
    (8, "Dysarthria", 5),
    (9, "Saliva", 5),
    (10, "Lip seal", 5),
    (11, "Tongue movement", 10),
    (12, "Tongue strength", 10),
    (13, "Tongue co-ordination", 10),
    (14, "Oral preparation", 10),
    (15, "Gag", 5),
    (16, "Palate", 10),
    (17, "Bolus clearance", 10),
    (18, "Oral transit", 10),
    (19, "Cough reflex", 5),
    (20, "Voluntary cough", 10),
    (21, "Voice", 10),
    (22, "Trache", 10),
    (23, "Pharyngeal phase", 10),
    (24, "Pharyngeal response", 10),
]

ASSESSMENT_AREAS: Dict[int, AssessmentArea] = {
    index: AssessmentArea(index, title, max_grade) for index, title, max_grade in _AREAS
}

AREA_COUNT = len(ASSESSMENT_AREAS)
MAX_TOTAL_SCORE = sum(a.max_grade for a in ASSESSMENT_AREAS.values())
