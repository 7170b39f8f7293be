from functools import lru_cache
import logging
import os


logger = logging.getLogger(__name__)


class Settings:
    def __init__(self) -> None:
        self.app_name = os.getenv("APP_NAME", "consent-contract-engine")
        self.app_version = os.getenv("APP_VERSION", "0.1.0")
        self.env = os.getenv("ENV", "dev").lower()
        if self.env not in {"dev", "test", "staging", "prod"}:
            raise RuntimeError("ENV must be one of: dev, test, staging, prod")
        self.expected_alembic_head = os.getenv("EXPECTED_ALEMBIC_HEAD", "").strip()
        self.log_level = os.getenv("LOG_LEVEL", "DEBUG" if self.env in {"dev", "test"} else "INFO").upper().strip()

        self.database_url = os.getenv("DATABASE_URL")
        if not self.database_url:
            if self.env == "prod":
                raise RuntimeError("DATABASE_URL is required in prod")
            self.database_url = "postgresql+psycopg://postgres@localhost:5433/consent_engine"
            logger.warning("DATABASE_URL not set, using local dev default")

        self.db_pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
        self.db_max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "10"))
        self.db_pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "1800"))
        # Upper bound for any single store round-trip: pool checkout, statement and lock waits.
        self.store_timeout_seconds = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))

        self.notification_webhook_url = os.getenv("NOTIFICATION_WEBHOOK_URL", "").strip()
        self.notification_signing_secret = os.getenv("NOTIFICATION_SIGNING_SECRET")
        if self.notification_webhook_url and not self.notification_signing_secret:
            if self.env == "prod":
                raise RuntimeError("NOTIFICATION_SIGNING_SECRET is required in prod when NOTIFICATION_WEBHOOK_URL is set")
            self.notification_signing_secret = "dev-notification-secret-change-me"
            logger.warning("NOTIFICATION_SIGNING_SECRET not set, using insecure dev fallback")
        self.notification_timeout_seconds = int(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "5"))

        self.default_page_limit = int(os.getenv("DEFAULT_PAGE_LIMIT", "10"))
        self.auto_create_schema = os.getenv("AUTO_CREATE_SCHEMA", "false").lower() == "true"
        self.cors_allowed_origins = self._parse_cors_origins()
        self.validate()

    def _parse_cors_origins(self) -> list[str]:
        raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
        if raw.strip():
            return [origin.strip() for origin in raw.split(",") if origin.strip()]
        if self.env == "dev":
            return ["http://localhost:3000", "http://127.0.0.1:3000"]
        return []

    def validate(self) -> None:
        if self.store_timeout_seconds <= 0:
            raise RuntimeError("STORE_TIMEOUT_SECONDS must be > 0")
        if not 1 <= self.default_page_limit <= 100:
            raise RuntimeError("DEFAULT_PAGE_LIMIT must be between 1 and 100")
        if self.env == "prod":
            if not self.cors_allowed_origins:
                raise RuntimeError("CORS_ALLOWED_ORIGINS must be explicitly set in prod")
            if self.auto_create_schema:
                raise RuntimeError("AUTO_CREATE_SCHEMA must be false in prod")
            if self.log_level == "DEBUG":
                raise RuntimeError("LOG_LEVEL=DEBUG is not allowed in prod")
            if self.notification_webhook_url and not self.notification_webhook_url.startswith("https://"):
                raise RuntimeError("NOTIFICATION_WEBHOOK_URL must use https in prod")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def reset_settings_cache() -> None:
    get_settings.cache_clear()
