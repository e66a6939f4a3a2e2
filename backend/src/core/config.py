from decimal import Decimal
from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    db_name: str = "invoicing"
    db_user: str = "invoicing"
    db_password: str = "CHANGE_ME"
    db_host: str = "db"
    db_port: int = 5432
    db_ssl: bool = False
    db_pool_size: int = 20
    db_statement_timeout_ms: int = 30000

    # App
    debug: bool = False
    log_level: str = "INFO"
    secret_key: str = "CHANGE_ME"
    public_base_url: str = "http://localhost:8000"

    # Inbound request authentication
    request_max_age_seconds: int = 300

    # Invoicing defaults
    default_due_days: int = 14
    default_vat_rate: Decimal = Decimal("0.25")
    default_currency: str = "NOK"
    default_organization_number: str = ""

    # Outbound webhooks
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 3
    webhook_base_delay_seconds: float = 1.0
    webhook_retry_batch_size: int = 50
    webhook_stale_after_minutes: int = 10
    webhook_sweep_interval_minutes: int = 15

    # Scheduler
    overdue_check_hour: int = 6  # UTC

    # Payment reminders
    reminder_interval_days: int = 14
    reminder_max_count: int = 2

    # SMTP
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from_address: str = ""
    email_from_name: str = "Faktura"
    email_reply_to: str = ""
    email_bcc: str = ""

    # Object storage
    storage_dir: str = "/app/storage"

    @property
    def database_url(self) -> str:
        base = (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )
        return f"{base}?ssl=require" if self.db_ssl else base

    model_config = {"env_file": ".env", "extra": "ignore"}

    def validate_secrets(self) -> None:
        """Raise if production-critical secrets are still defaults."""
        defaults = {"CHANGE_ME"}
        if self.secret_key in defaults:
            raise ValueError("secret_key must be changed from default")
        if len(self.secret_key) < 32:
            raise ValueError("secret_key must be at least 32 characters")
        parsed = urlparse(self.public_base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("public_base_url must be a valid http(s) URL")
        if self.db_password in defaults:
            raise ValueError("db_password must be changed from default")

    @property
    def storage_path(self) -> Path:
        docker_path = Path(self.storage_dir)
        if docker_path.exists():
            return docker_path
        local_path = Path("storage")
        local_path.mkdir(exist_ok=True)
        return local_path


settings = Settings()
