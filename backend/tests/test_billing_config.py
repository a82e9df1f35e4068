import pytest

from backend.app.billing import ConfigurationError, load_billing_config, load_database_config
from backend.app.billing.config import DEFAULT_CAPABILITY_SECRET


def test_defaults_apply_when_environment_is_empty():
    config = load_billing_config({})

    assert config.webhook_secret is None
    assert config.stripe_api_key is None
    assert config.capability_secret == DEFAULT_CAPABILITY_SECRET
    assert config.signature_tolerance_seconds == 300
    assert config.downgrade_window_days == 7
    assert config.past_due_grace_days == 7
    assert config.external_timeout_seconds == 10.0
    assert config.monitor_max_consecutive_errors == 5
    assert config.default_currency == "USD"
    assert config.credits_per_currency_unit == 1000
    assert config.credit_expiry_scan_interval_seconds == 3600.0
    assert config.credit_expiry_warning_days == 7
    assert config.monitor_enabled is True
    assert config.store_backend == "postgres"


def test_values_are_read_from_environment():
    config = load_billing_config(
        {
            "BILLING_WEBHOOK_SECRET": "whsec_abc",
            "BILLING_DOWNGRADE_WINDOW_DAYS": "3",
            "BILLING_EXTERNAL_TIMEOUT_SECONDS": "2.5",
            "BILLING_DEFAULT_CURRENCY": "eur",
            "BILLING_MONITOR_ENABLED": "off",
            "BILLING_STORE": "Memory",
            "BILLING_CREDIT_EXPIRY_INTERVAL_SECONDS": "120",
        }
    )

    assert config.require_webhook_secret() == "whsec_abc"
    assert config.downgrade_window_days == 3
    assert config.external_timeout_seconds == 2.5
    assert config.default_currency == "EUR"
    assert config.monitor_enabled is False
    assert config.credit_expiry_scan_interval_seconds == 120.0
    assert config.store_backend == "memory"


def test_missing_webhook_secret_is_a_configuration_error():
    config = load_billing_config({})

    with pytest.raises(ConfigurationError) as excinfo:
        config.require_webhook_secret()

    assert excinfo.value.status_code == 500
    assert excinfo.value.setting == "BILLING_WEBHOOK_SECRET"


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("BILLING_PAST_DUE_GRACE_DAYS", "seven"),
        ("BILLING_EXTERNAL_TIMEOUT_SECONDS", "fast"),
        ("BILLING_DEFAULT_CURRENCY", "EURO"),
        ("BILLING_STORE", "redis"),
    ],
)
def test_invalid_values_raise_configuration_error(key, value):
    with pytest.raises(ConfigurationError) as excinfo:
        load_billing_config({key: value})

    assert excinfo.value.setting == key


def test_database_config_builds_bounded_connect_kwargs():
    config = load_database_config(
        {
            "DB_HOST": "db.internal",
            "DB_PORT": "6543",
            "DB_CONNECT_TIMEOUT": "5",
            "DB_STATEMENT_TIMEOUT_MS": "2000",
        }
    )

    kwargs = config.connect_kwargs()
    assert kwargs["host"] == "db.internal"
    assert kwargs["port"] == 6543
    assert kwargs["connect_timeout"] == 5
    assert kwargs["options"] == "-c statement_timeout=2000"
