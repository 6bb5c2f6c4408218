"""Environment-driven configuration."""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional

from .database.session import get_database_url


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PayPalConfig:
    mode: str = "sandbox"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    currency: str = "PHP"
    timeout: float = 30.0
    frontend_url: str = "http://localhost:3000"
    webhook_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "PayPalConfig":
        return cls(
            mode=os.getenv("PAYPAL_MODE", "sandbox"),
            client_id=os.getenv("PAYPAL_CLIENT_ID"),
            client_secret=os.getenv("PAYPAL_CLIENT_SECRET"),
            currency=os.getenv("PAYPAL_CURRENCY", "PHP"),
            timeout=float(os.getenv("PAYPAL_TIMEOUT", "30")),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            webhook_id=os.getenv("PAYPAL_WEBHOOK_ID"),
        )


@dataclass
class SMTPConfig:
    host: Optional[str] = None
    port: int = 587
    user: Optional[str] = None
    password: Optional[str] = None
    sender: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    @classmethod
    def from_env(cls) -> "SMTPConfig":
        user = os.getenv("SMTP_USER")
        return cls(
            host=os.getenv("SMTP_HOST"),
            port=int(os.getenv("SMTP_PORT", "587")),
            user=user,
            password=os.getenv("SMTP_PASS"),
            sender=os.getenv("EMAIL_FROM") or user,
        )


@dataclass
class ReconciliationSettings:
    """Retry policy for appointment updates."""
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds, multiplied by the attempt number

    @classmethod
    def from_env(cls) -> "ReconciliationSettings":
        return cls(
            max_retries=int(os.getenv("SYNC_MAX_RETRIES", "3")),
            retry_delay=float(os.getenv("SYNC_RETRY_DELAY", "1.0")),
        )


@dataclass
class MonitorSettings:
    """Timing of the status monitor."""
    check_interval: float = 30.0
    repair_pause: float = 1.0
    event_settle_delay: float = 2.0
    autostart: bool = True

    @classmethod
    def from_env(cls) -> "MonitorSettings":
        return cls(
            check_interval=float(os.getenv("MONITOR_CHECK_INTERVAL", "30")),
            repair_pause=float(os.getenv("MONITOR_REPAIR_PAUSE", "1.0")),
            event_settle_delay=float(os.getenv("MONITOR_EVENT_SETTLE_DELAY", "2.0")),
            autostart=_env_bool("MONITOR_AUTOSTART", True),
        )


@dataclass
class Settings:
    database_url: str = field(default_factory=get_database_url)
    api_key: Optional[str] = None
    payment_gateway: str = "paypal"
    log_level: str = "INFO"
    paypal: PayPalConfig = field(default_factory=PayPalConfig)
    smtp: SMTPConfig = field(default_factory=SMTPConfig)
    reconciliation: ReconciliationSettings = field(default_factory=ReconciliationSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=get_database_url(),
            api_key=os.getenv("API_KEY"),
            payment_gateway=os.getenv("PAYMENT_GATEWAY", "paypal").lower(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            paypal=PayPalConfig.from_env(),
            smtp=SMTPConfig.from_env(),
            reconciliation=ReconciliationSettings.from_env(),
            monitor=MonitorSettings.from_env(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the application."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
