import os
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv

# .env is read from the working directory of the launching process
env_path = Path.cwd() / ".env"
load_dotenv(env_path)


@dataclass
class Config:
    # HTTP API (gateway webhooks + status reads)
    api_host: str
    api_port: int
    # Payments
    payment_provider: str
    payment_currency: str
    paystack_secret_key: str
    paystack_base_url: str
    paystack_verify_attempts: int
    paystack_verify_delay_sec: float
    # Maintenance
    maintenance_enabled: bool
    suspension_reconcile_interval_sec: int
    # Logging
    log_level: str
    log_dir: str
    log_max_bytes: int
    log_backup_count: int


def clean_env_value(value: str | None, default: str = "") -> str:
    """Strip whitespace and surrounding quotes from an env value."""
    if value is None:
        return default
    return value.strip().strip('"').strip("'") or default


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean env value."""
    if value is None:
        return default
    value = value.strip().strip('"').strip("'").lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_int(value: str | None, default: int | None = None) -> int | None:
    """Parse an int env value, falling back to default when empty or malformed."""
    if value is None:
        return default
    value = value.strip().strip('"').strip("'")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    value = value.strip().strip('"').strip("'")
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


CFG = Config(
    api_host=clean_env_value(os.getenv("API_HOST"), "0.0.0.0"),
    api_port=parse_int(os.getenv("API_PORT"), 8080),
    payment_provider=clean_env_value(os.getenv("PAYMENT_PROVIDER"), "mock").lower(),
    payment_currency=clean_env_value(os.getenv("PAYMENT_CURRENCY"), "NGN").upper(),
    paystack_secret_key=clean_env_value(os.getenv("PAYSTACK_SECRET_KEY")),
    paystack_base_url=clean_env_value(os.getenv("PAYSTACK_BASE_URL"), "https://api.paystack.co").rstrip("/"),
    paystack_verify_attempts=parse_int(os.getenv("PAYSTACK_VERIFY_ATTEMPTS"), 10),
    paystack_verify_delay_sec=parse_float(os.getenv("PAYSTACK_VERIFY_DELAY_SEC"), 1.2),
    maintenance_enabled=parse_bool(os.getenv("MAINTENANCE_ENABLED"), True),
    suspension_reconcile_interval_sec=parse_int(os.getenv("SUSPENSION_RECONCILE_INTERVAL_SEC"), 300),
    log_level=clean_env_value(os.getenv("LOG_LEVEL"), "INFO").upper(),
    log_dir=clean_env_value(os.getenv("LOG_DIR"), str(Path.cwd() / "logs")),
    log_max_bytes=parse_int(os.getenv("LOG_MAX_BYTES"), 10 * 1024 * 1024),
    log_backup_count=parse_int(os.getenv("LOG_BACKUP_COUNT"), 10),
)

# Database path: from env or relative to the working directory
DB_PATH = os.getenv("DB_PATH", str(Path.cwd() / "billing.db"))


def is_paystack_configured() -> bool:
    """Paystack gateway is usable only with a non-empty secret key."""
    return bool(CFG.paystack_secret_key)


def is_maintenance_enabled() -> bool:
    return CFG.maintenance_enabled
