"""
Demo data seeder for the MASA service.

Creates five demo patients with one to three completed assessments each so
the dashboard and progress views have something to show on a fresh start.
Grades are drawn from a seeded RNG, so every run produces the same scores.

This seeder is idempotent; it does nothing once any patient exists. It also
leaves a fresh process alone while device-local records are still waiting to
be migrated.
"""
import logging
import random
from datetime import date, timedelta
from typing import Dict, Optional

from .core.config import settings
from .core.security import AuthenticatedUser
from .models.areas import ASSESSMENT_AREAS, MAX_TOTAL_SCORE
from .models.assessment import AssessmentCreate, PatientInfo
from .models.patient import PatientCreate
from .services.repository import Repository

logger = logging.getLogger(__name__)

DEMO_SEED = 20240315
DEMO_USER_ID = "demo-seed"

DEMO_PATIENTS = [
    {"name": "John Smith", "date_of_birth": "1985-03-15", "mrn": "MRN-001"},
    {"name": "Sarah Johnson", "date_of_birth": "1978-07-22", "mrn": "MRN-002"},
    {"name": "Michael Brown", "date_of_birth": "1992-11-08", "mrn": "MRN-003"},
    {"name": "Emily Davis", "date_of_birth": "1989-05-30", "mrn": "MRN-004"},
    {"name": "Robert Wilson", "date_of_birth": "1975-12-14", "mrn": "MRN-005"},
]

DEMO_CLINICIANS = ["Dr. Smith", "Dr. Johnson", "Dr. Williams", "Dr. Brown"]

MIN_DEMO_SCORE = 150
MAX_DEMO_SCORE = 199


def grades_for_total(target: int, rng: random.Random) -> Dict[int, int]:
    """Grades for all 24 areas, each within its maximum, summing to ``target``."""
    if not 0 <= target <= MAX_TOTAL_SCORE:
        raise ValueError(f"Target score {target} outside 0..{MAX_TOTAL_SCORE}")
    grades = {index: area.max_grade for index, area in ASSESSMENT_AREAS.items()}
    deficit = MAX_TOTAL_SCORE - target
    while deficit > 0:
        index = rng.choice([i for i, grade in grades.items() if grade > 0])
        step = rng.randint(1, min(grades[index], deficit, 3))
        grades[index] -= step
        deficit -= step
    return grades


async def seed_demo_data(repository: Repository, today: Optional[date] = None) -> int:
    """Create demo patients and assessments unless patients already exist. Returns patients created."""
    # Seeding selects the backend; pending local records must wait for a real signed-in user
    if not repository.initialized and any(repository.local.count_records().values()):
        logger.info("Local records awaiting migration; skipping demo seed")
        return 0

    repo = repository.scoped(
        AuthenticatedUser(uid=DEMO_USER_ID, organization=settings.DEMO_ORGANIZATION)
    )
    if await repo.list_patients():
        logger.info("Patients already present; skipping demo seed")
        return 0

    rng = random.Random(DEMO_SEED)
    today = today or date.today()
    for index, demo in enumerate(DEMO_PATIENTS):
        patient = await repo.create_patient(PatientCreate(**demo))
        for i in range(rng.randint(1, 3)):
            score = rng.randint(MIN_DEMO_SCORE, MAX_DEMO_SCORE)
            # Oldest assessment first so saved order matches assessment dates
            days_ago = index * 30 + (2 - i) * 10
            await repo.create_assessment(
                AssessmentCreate(
                    patient_id=patient.id,
                    patient_info=PatientInfo(
                        name=patient.name,
                        date_of_birth=patient.date_of_birth,
                        mrn=patient.mrn,
                        assessment_date=today - timedelta(days=days_ago),
                        clinician=rng.choice(DEMO_CLINICIANS),
                    ),
                    selected_grades=grades_for_total(score, rng),
                    notes=f"Demo assessment {i + 1} for {patient.name}.",
                )
            )

    logger.info("Seeded %d demo patients", len(DEMO_PATIENTS))
    return len(DEMO_PATIENTS)
