from pydantic_settings import BaseSettings
from dotenv import load_dotenv
from typing import Optional, List

load_dotenv()

class Settings(BaseSettings):
    DATABASE_URL: Optional[str] = None
    DB_DRIVER: str = "postgresql+asyncpg"
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "notification_db"
    DB_USER: Optional[str] = None
    DB_PASSWORD: Optional[str] = None
    DB_ECHO: bool = False

    RABBITMQ_URL: Optional[str] = None
    RABBITMQ_CONNECT_TRIES: int = 5
    RABBITMQ_CONNECT_DELAY: float = 2
    RABBITMQ_PREFETCH_COUNT: int = 1

    EMAIL_PROVIDER: str = "sendgrid"
    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_USER: str = "apikey"
    MAILGUN_USER: Optional[str] = None
    MAILGUN_PASSWORD: Optional[str] = None
    MAILGUN_HOST: str = "smtp.mailgun.org"
    MAILGUN_PORT: int = 587
    EMAIL_FROM: Optional[str] = None
    EMAIL_TIMEOUT_SECONDS: float = 10
    EMAIL_MAX_RETRIES: int = 3
    EMAIL_RETRY_INTERVAL_MINUTES: int = 5
    EMAIL_RETRY_BATCH_SIZE: int = 10
    EMAIL_RETRY_MIN_AGE_SECONDS: int = 120
    EMAIL_CIRCUIT_FAILURE_THRESHOLD: int = 5
    EMAIL_CIRCUIT_RESET_SECONDS: int = 60

    CORS_ORIGIN: str = "*"
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"
    SERVICE_NAME: str = "notification-service"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def database_url(self) -> str:
        """Explicit DATABASE_URL, else one assembled from the DB_* components."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        credentials = ""
        if self.DB_USER and self.DB_PASSWORD:
            credentials = f"{self.DB_USER}:{self.DB_PASSWORD}@"
        return f"{self.DB_DRIVER}://{credentials}{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    @property
    def cors_origins(self) -> List[str]:
        if self.CORS_ORIGIN.strip() == "*":
            return ["*"]
        return [origin.strip() for origin in self.CORS_ORIGIN.split(",") if origin.strip()]

settings = Settings()
