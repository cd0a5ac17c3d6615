from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    PROJECT_NAME: str = "OPD Queue Engine"
    API_V1_STR: str = "/api/v1"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_DB: str = "opdqueue"
    DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379/0"

    # ETA calculator
    ETA_CACHE_TTL_SECONDS: int = 300
    ETA_MIN_MINUTES: int = 5
    ETA_MAX_MINUTES: int = 180
    TRANSITION_BUFFER_MINUTES: int = 5
    DEFAULT_CONSULTATION_MINUTES: int = 15
    HISTORY_MIN_COMPLETED: int = 5
    EMERGENCY_ADJUSTMENT_MINUTES: int = -10
    LATE_CHECKIN_PENALTY_MINUTES: int = 5
    LATE_CHECKIN_THRESHOLD_MINUTES: int = 15

    # Check-in
    DEFAULT_GEOFENCE_RADIUS_METERS: int = 200

    # Queue lanes and allocation
    POSITION_ALLOCATION_RETRIES: int = 3
    DISTRIBUTED_LANES: bool = False
    LANE_LOCK_TIMEOUT_SECONDS: int = 30

    # Background sweeps
    REMINDER_LEAD_MINUTES: int = 60
    SWEEP_INTERVAL_SECONDS: int = 0

    class Config:
        case_sensitive = True
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if not self.DATABASE_URL:
            self.DATABASE_URL = f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}/{self.POSTGRES_DB}"

settings = Settings()
