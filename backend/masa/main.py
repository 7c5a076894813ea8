"""
MASA Swallowing Assessment - persistence and analytics API
Stores patient and assessment records with PHI encrypted at rest, on the
remote document store when it is reachable and on local storage otherwise.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import analytics, assessments, patients, storage
from .api.deps import encryption_error_handler, store_error_handler
from .core.audit_middleware import AuditMiddleware
from .core.config import settings
from .core.encryption import EncryptionError
from .core.errors import StoreError
from .seed_demo import seed_demo_data
from .services.repository import build_repository

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    repository = build_repository()
    # Tables are created up front; backend selection waits for the first signed-in caller
    repository.local.create_tables()
    app.state.repository = repository
    if settings.DEMO_SEED_ENABLED:
        await seed_demo_data(repository)
    try:
        yield
    finally:
        await repository.close()


app = FastAPI(
    title="MASA Swallowing Assessment API",
    description=(
        "Mann Assessment of Swallowing Ability records: patients, assessments, "
        "scores and progress trends, with encrypted storage and a one-time "
        "migration from device storage to the shared document store."
    ),
    version=settings.VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # TODO: Restrict to specific origins in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(AuditMiddleware)

app.add_exception_handler(StoreError, store_error_handler)
app.add_exception_handler(EncryptionError, encryption_error_handler)

app.include_router(patients.router, prefix="/api/v1")
app.include_router(assessments.router, prefix="/api/v1")
app.include_router(analytics.router, prefix="/api/v1")
app.include_router(storage.router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME, "version": settings.VERSION}
