from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    APP_NAME: str = "MASA Swallowing Assessment"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Device-local key-value store
    DATABASE_URL: str = "sqlite:///./masa.db"

    # PHI encryption secret; no plaintext fallback when unset
    ENCRYPTION_KEY: Optional[str] = None

    # Remote document store (Firestore-compatible REST API)
    REMOTE_ENABLED: bool = True
    REMOTE_PROJECT_ID: Optional[str] = None
    REMOTE_DATABASE: str = "(default)"
    REMOTE_BASE_URL: str = "https://firestore.googleapis.com/v1"
    REMOTE_API_KEY: Optional[str] = None
    REMOTE_AUTH_TOKEN: Optional[str] = None
    REMOTE_TIMEOUT: int = 10

    DEMO_SEED_ENABLED: bool = False
    DEMO_ORGANIZATION: str = "demo"

    class Config:
        env_file = ".env"

    @property
    def remote_configured(self) -> bool:
        return self.REMOTE_ENABLED and bool(self.REMOTE_PROJECT_ID)


settings = Settings()
