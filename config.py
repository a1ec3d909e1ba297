from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./campus_events.db")

    # Security / Auth
    SECRET_KEY: str = os.getenv("SECRET_KEY", "your-super-secret-jwt-key-change-this-in-production")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7
    CAPTCHA_ENABLED: bool = True
    CAPTCHA_TTL_SECONDS: int = 300

    # Environment / Logging
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:5174",
        "http://127.0.0.1:5173",
    ]

    # Event lifecycle sweep
    SCHEDULER_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 60

    # Participants whose email ends with one of these are IIIT
    IIIT_EMAIL_DOMAINS: List[str] = [
        "iiit.ac.in",
        "students.iiit.ac.in",
        "faculty.iiit.ac.in",
        "research.iiit.ac.in",
    ]

    # Payment proofs
    UPLOAD_DIR: str = "uploads/payment-proofs"
    MAX_PROOF_BYTES: int = 5 * 1024 * 1024
    ALLOWED_PROOF_TYPES: List[str] = [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "application/pdf",
    ]

    # Email (SMTP). Leave SMTP_USER / SMTP_PASS blank to disable email.
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASS: str = ""
    SMTP_FROM: str = "Felicity Events <noreply@felicity.iiit.ac.in>"

    # Notifications
    NOTIFICATION_QUEUE_SIZE: int = 500
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    # Catalogue / forum
    TRENDING_LIMIT: int = 5
    TRENDING_WINDOW_HOURS: int = 24
    MESSAGE_MAX_LENGTH: int = 2000


settings = Settings()
