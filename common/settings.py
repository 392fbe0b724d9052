import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    jwt_issuer: str = os.getenv("JWT_ISSUER", "marketplace")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))

    auth_database_url: str = os.getenv("AUTH_DATABASE_URL", "sqlite:///./auth.db")
    ledger_database_url: str = os.getenv("LEDGER_DATABASE_URL", "sqlite:///./ledger.db")
    contract_database_url: str = os.getenv("CONTRACT_DATABASE_URL", "sqlite:///./contracts.db")
    dispute_database_url: str = os.getenv("DISPUTE_DATABASE_URL", "sqlite:///./disputes.db")
    notification_database_url: str = os.getenv("NOTIFICATION_DATABASE_URL", "sqlite:///./notifications.db")
    audit_database_url: str = os.getenv("AUDIT_DATABASE_URL", "sqlite:///./audit.db")
    database_isolation_level: str = os.getenv("DATABASE_ISOLATION_LEVEL", "READ COMMITTED")
    sqlite_busy_timeout_seconds: float = float(os.getenv("SQLITE_BUSY_TIMEOUT_SECONDS", "30"))

    ledger_retry_attempts: int = int(os.getenv("LEDGER_RETRY_ATTEMPTS", "3"))
    ledger_retry_base_delay: float = float(os.getenv("LEDGER_RETRY_BASE_DELAY", "0.05"))

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    events_enabled: bool = os.getenv("EVENTS_ENABLED", "true").lower() == "true"

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    login_rate_limit: int = int(os.getenv("LOGIN_RATE_LIMIT", "10"))
    login_rate_window_seconds: int = int(os.getenv("LOGIN_RATE_WINDOW_SECONDS", "60"))
    notification_dedup_ttl_seconds: int = int(os.getenv("NOTIFICATION_DEDUP_TTL_SECONDS", "86400"))
    consumer_shutdown_timeout_seconds: float = float(os.getenv("CONSUMER_SHUTDOWN_TIMEOUT_SECONDS", "10"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    service_version: str = os.getenv("SERVICE_VERSION", "1.0.0")

settings = Settings()
