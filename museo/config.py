from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "Museo Visit Booking API"
    DATABASE_URL: str = "sqlite:///./museo.db"
    LOG_LEVEL: str = "INFO"
    SKIP_DB_INIT: bool = False

    # Admission rules
    SLOT_CAPACITY: int = 30
    MAX_VISITORS_PER_BOOKING: int = 30
    TOKEN_TTL_HOURS: int = 24
    TIME_SLOTS: List[str] = [
        "09:00 - 10:00",
        "10:00 - 11:00",
        "11:00 - 12:00",
        "13:00 - 14:00",
        "14:00 - 15:00",
        "15:00 - 16:00",
    ]


settings = Settings()
