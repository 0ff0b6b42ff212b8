from datetime import datetime
from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    PROJECT_NAME: str = "DocSlot"
    API_V1_STR: str = "/api/v1"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_DB: str = "docslot"
    DATABASE_URL: Optional[str] = None

    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Scheduling
    AVAILABILITY_LOOKAHEAD_WEEKS: int = 4
    MULTI_DAY_SEARCH_LIMIT: int = 7
    BOOKING_END_SENTINEL: datetime = datetime(2099, 12, 31, 23, 59, 59)
    DEFAULT_PAGE_LIMIT: int = 50
    MAX_PATIENTS_PER_SLOT: int = 50

    class Config:
        case_sensitive = True
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if not self.DATABASE_URL:
            self.DATABASE_URL = f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}/{self.POSTGRES_DB}"

settings = Settings()
