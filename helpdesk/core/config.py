"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str

    # Ticket numbering
    # Used only when the settings store has no "ticket_prefix" entry.
    TICKET_PREFIX: str = "QF"
    TICKET_CREATE_MAX_ATTEMPTS: int = 3

    # SLA display
    SLA_APPROACHING_PERCENT: int = 25

    # Mailbox polling (minutes)
    DEFAULT_POLLING_INTERVAL_MINUTES: int = 2

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""  # Secret for /internal/scheduled/* endpoints

    # Attachment storage
    STORAGE_BACKEND: str = "local"  # local | s3
    LOCAL_STORAGE_PATH: str = "./storage"
    S3_BUCKET: str = "helpdesk-attachments"
    S3_REGION: str = ""
    S3_ENDPOINT_URL: str = ""
    S3_URL_STYLE: str = ""  # path | virtual
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""

    # Worker
    WORKER_POLL_INTERVAL: int = 10
    WORKER_BATCH_SIZE: int = 10
    SCHEDULER_INTERVAL_SECONDS: int = 60


settings = Settings()
