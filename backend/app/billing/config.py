"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
import os

from .exceptions import ConfigurationError

DEFAULT_CAPABILITY_SECRET = "dev-billing-capability-secret"


@dataclass(frozen=True)
class BillingConfig:
    """Runtime settings for the billing engine."""

    webhook_secret: Optional[str]
    stripe_api_key: Optional[str]
    capability_secret: str
    signature_tolerance_seconds: int
    downgrade_window_days: int
    past_due_grace_days: int
    journal_stale_seconds: int
    external_timeout_seconds: float
    expiry_scan_interval_seconds: float
    reminder_scan_interval_seconds: float
    credit_expiry_scan_interval_seconds: float
    credit_expiry_warning_days: int
    monitor_max_consecutive_errors: int
    default_currency: str
    credits_per_currency_unit: int
    monitor_enabled: bool
    store_backend: str = "postgres"

    def require_webhook_secret(self) -> str:
        if not self.webhook_secret:
            raise ConfigurationError(
                "BILLING_WEBHOOK_SECRET must be set to verify webhook signatures",
                setting="BILLING_WEBHOOK_SECRET",
            )
        return self.webhook_secret


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the PostgreSQL billing store."""

    host: str
    port: int
    dbname: str
    user: str
    password: str
    connect_timeout: Optional[int]
    statement_timeout_ms: Optional[int]

    def connect_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
        }
        if self.connect_timeout is not None:
            kwargs["connect_timeout"] = self.connect_timeout
        if self.statement_timeout_ms is not None:
            kwargs["options"] = f"-c statement_timeout={self.statement_timeout_ms}"
        return kwargs


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int, setting: str) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Expected integer value for {setting}, got {value!r}", setting=setting) from exc


def _to_float(value: Optional[str], *, default: float, setting: str) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Expected float value for {setting}, got {value!r}", setting=setting) from exc


def _optional_positive_int(value: Optional[str], *, setting: str) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    parsed = _to_int(value, default=0, setting=setting)
    return parsed if parsed > 0 else None


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    currency = (env_mapping.get("BILLING_DEFAULT_CURRENCY") or "USD").strip().upper()
    if len(currency) != 3:
        raise ConfigurationError(
            f"BILLING_DEFAULT_CURRENCY must be a 3-letter code, got {currency!r}",
            setting="BILLING_DEFAULT_CURRENCY",
        )

    store_backend = (env_mapping.get("BILLING_STORE") or "postgres").strip().lower()
    if store_backend not in {"postgres", "memory"}:
        raise ConfigurationError(
            f"BILLING_STORE must be 'postgres' or 'memory', got {store_backend!r}",
            setting="BILLING_STORE",
        )

    return BillingConfig(
        webhook_secret=env_mapping.get("BILLING_WEBHOOK_SECRET") or None,
        stripe_api_key=env_mapping.get("STRIPE_API_KEY") or None,
        capability_secret=env_mapping.get("BILLING_CAPABILITY_SECRET") or DEFAULT_CAPABILITY_SECRET,
        signature_tolerance_seconds=max(
            0,
            _to_int(
                env_mapping.get("BILLING_SIGNATURE_TOLERANCE_SECONDS"),
                default=300,
                setting="BILLING_SIGNATURE_TOLERANCE_SECONDS",
            ),
        ),
        downgrade_window_days=max(
            0,
            _to_int(
                env_mapping.get("BILLING_DOWNGRADE_WINDOW_DAYS"),
                default=7,
                setting="BILLING_DOWNGRADE_WINDOW_DAYS",
            ),
        ),
        past_due_grace_days=max(
            0,
            _to_int(
                env_mapping.get("BILLING_PAST_DUE_GRACE_DAYS"),
                default=7,
                setting="BILLING_PAST_DUE_GRACE_DAYS",
            ),
        ),
        journal_stale_seconds=max(
            1,
            _to_int(
                env_mapping.get("BILLING_JOURNAL_STALE_SECONDS"),
                default=300,
                setting="BILLING_JOURNAL_STALE_SECONDS",
            ),
        ),
        external_timeout_seconds=max(
            0.1,
            _to_float(
                env_mapping.get("BILLING_EXTERNAL_TIMEOUT_SECONDS"),
                default=10.0,
                setting="BILLING_EXTERNAL_TIMEOUT_SECONDS",
            ),
        ),
        expiry_scan_interval_seconds=max(
            1.0,
            _to_float(
                env_mapping.get("BILLING_EXPIRY_SCAN_INTERVAL_SECONDS"),
                default=60.0,
                setting="BILLING_EXPIRY_SCAN_INTERVAL_SECONDS",
            ),
        ),
        reminder_scan_interval_seconds=max(
            1.0,
            _to_float(
                env_mapping.get("BILLING_REMINDER_SCAN_INTERVAL_SECONDS"),
                default=900.0,
                setting="BILLING_REMINDER_SCAN_INTERVAL_SECONDS",
            ),
        ),
        credit_expiry_scan_interval_seconds=max(
            1.0,
            _to_float(
                env_mapping.get("BILLING_CREDIT_EXPIRY_INTERVAL_SECONDS"),
                default=3600.0,
                setting="BILLING_CREDIT_EXPIRY_INTERVAL_SECONDS",
            ),
        ),
        credit_expiry_warning_days=max(
            0,
            _to_int(
                env_mapping.get("BILLING_CREDIT_EXPIRY_WARNING_DAYS"),
                default=7,
                setting="BILLING_CREDIT_EXPIRY_WARNING_DAYS",
            ),
        ),
        monitor_max_consecutive_errors=max(
            1,
            _to_int(
                env_mapping.get("BILLING_MONITOR_MAX_CONSECUTIVE_ERRORS"),
                default=5,
                setting="BILLING_MONITOR_MAX_CONSECUTIVE_ERRORS",
            ),
        ),
        default_currency=currency,
        credits_per_currency_unit=max(
            1,
            _to_int(
                env_mapping.get("BILLING_CREDITS_PER_CURRENCY_UNIT"),
                default=1000,
                setting="BILLING_CREDITS_PER_CURRENCY_UNIT",
            ),
        ),
        monitor_enabled=_to_bool(env_mapping.get("BILLING_MONITOR_ENABLED"), default=True),
        store_backend=store_backend,
    )


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    """Load :class:`DatabaseConfig` from the DB_* environment variables."""

    env_mapping = os.environ if env is None else env

    return DatabaseConfig(
        host=env_mapping.get("DB_HOST", "localhost"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432, setting="DB_PORT"),
        dbname=env_mapping.get("DB_NAME", "billing"),
        user=env_mapping.get("DB_USER", "postgres"),
        password=env_mapping.get("DB_PASSWORD", "postgres"),
        connect_timeout=_optional_positive_int(env_mapping.get("DB_CONNECT_TIMEOUT"), setting="DB_CONNECT_TIMEOUT"),
        statement_timeout_ms=_optional_positive_int(
            env_mapping.get("DB_STATEMENT_TIMEOUT_MS"), setting="DB_STATEMENT_TIMEOUT_MS"
        ),
    )


__all__ = [
    "BillingConfig",
    "DEFAULT_CAPABILITY_SECRET",
    "DatabaseConfig",
    "load_billing_config",
    "load_database_config",
]
