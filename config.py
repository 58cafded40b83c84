"""Configuration settings for the field evidence core"""
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Local store
    DATABASE_URL: str = "sqlite:///./data/field_evidence.db"
    LOCAL_STORE_ENABLED: bool = True  # False on platforms without SQLite (web)

    # Evidence file tree
    STORAGE_ROOT: str = "./data"
    TEMP_MAX_AGE_HOURS: int = 24

    # Thumbnails
    THUMBNAIL_WIDTH: int = 200
    THUMBNAIL_QUALITY: int = 70

    # Sync server
    API_URL: str = "http://localhost:3000"
    API_TIMEOUT: float = 30.0
    HEALTH_CHECK_TIMEOUT: float = 5.0
    UPLOAD_TIMEOUT: float = 120.0
    REQUEST_RETRY_ATTEMPTS: int = 3
    REQUEST_RETRY_BASE_DELAY: float = 1.0

    # Resumable uploads
    CHUNKED_UPLOAD_THRESHOLD: int = 10 * 1024 * 1024
    CHUNK_SIZE: int = 5 * 1024 * 1024
    UPLOAD_RETRY_DELAYS: List[float] = [0, 1, 3, 5, 10]
    TUS_ENDPOINT: str = "/api/upload/video"

    # Queue
    MAX_SYNC_ATTEMPTS: int = 3

    # Capture location
    CAPTURE_LOCATION_THRESHOLD_M: float = 500.0
    APPROXIMATE_LOCATION_ACCURACY_M: float = 1000.0

    # Network policy
    LARGE_FILE_WIFI_ONLY: bool = True
    WIFI_ONLY_THRESHOLD_MB: int = 5

    # Background
    BACKGROUND_SYNC_INTERVAL: int = 15 * 60  # platform minimum
    SYNC_LOG_LIMIT: int = 50

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
