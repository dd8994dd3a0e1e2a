"""
Configuration settings for the upload server
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _float_list(value: str) -> list[float]:
    return [float(part) for part in value.split(",") if part.strip()]


class Settings:
    """Application settings"""

    # Object storage: "local" (filesystem) or "minio"
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "local")
    LOCAL_STORAGE_DIR: str = os.getenv("LOCAL_STORAGE_DIR", "/tmp/uploads")
    STAGING_PREFIX: str = os.getenv("STAGING_PREFIX", "staging")

    # MinIO / Object Storage
    MINIO_ENDPOINT: str = os.getenv("MINIO_ENDPOINT", "localhost:9000")
    MINIO_ACCESS_KEY: str = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
    MINIO_SECRET_KEY: str = os.getenv("MINIO_SECRET_KEY", "minioadmin")
    MINIO_BUCKET: str = os.getenv("MINIO_BUCKET", "uploads")
    MINIO_SECURE: bool = os.getenv("MINIO_SECURE", "false").lower() == "true"

    # Session persistence tiers (empty string disables a tier)
    REDIS_URL: str = os.getenv("REDIS_URL", "")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    SESSION_FILE_DIR: str = os.getenv("SESSION_FILE_DIR", "/tmp/upload-sessions")
    SESSION_TTL_HOURS: int = int(os.getenv("SESSION_TTL_HOURS", "24"))
    SESSION_RETENTION_SECONDS: int = int(os.getenv("SESSION_RETENTION_SECONDS", "3600"))
    SWEEP_INTERVAL_SECONDS: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))

    # Chunking
    MIN_CHUNK_SIZE: int = int(os.getenv("MIN_CHUNK_SIZE", str(1 * 1024 * 1024)))  # 1MB
    MAX_CHUNK_SIZE: int = int(os.getenv("MAX_CHUNK_SIZE", str(10 * 1024 * 1024)))  # 10MB
    DEFAULT_CHUNK_SIZE: int = int(os.getenv("DEFAULT_CHUNK_SIZE", str(5 * 1024 * 1024)))  # 5MB
    CHECKSUM_ALGORITHM: str = os.getenv("CHECKSUM_ALGORITHM", "SHA256")

    # Transfer
    MAX_CONCURRENT_UPLOADS: int = int(os.getenv("MAX_CONCURRENT_UPLOADS", "4"))
    MAX_CHUNK_RETRIES: int = int(os.getenv("MAX_CHUNK_RETRIES", "3"))
    RETRY_BACKOFF_SECONDS: list[float] = _float_list(os.getenv("RETRY_BACKOFF_SECONDS", "1,3,5"))
    CHUNK_UPLOAD_TIMEOUT: float = float(os.getenv("CHUNK_UPLOAD_TIMEOUT", "120"))
    ASSEMBLY_TIMEOUT: float = float(os.getenv("ASSEMBLY_TIMEOUT", "1800"))
    BANDWIDTH_SAMPLES: int = int(os.getenv("BANDWIDTH_SAMPLES", "10"))

    # Server
    SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
    SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8000")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Application
    APP_TITLE: str = "Resumable Upload API"
    APP_DESCRIPTION: str = "Chunked uploads with verified resume and ordered assembly"
    APP_VERSION: str = "1.0.0"


settings = Settings()
