from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from django.conf import settings

from payout.services.errors import PayoutConfigurationError


@dataclass(frozen=True)
class PayoutConfig:
    default_commission_percent: Decimal
    scheduler_interval_hours: float
    release_events_on_failure: bool
    claim_retries: int


def get_payout_config() -> PayoutConfig:
    """Read the PAYOUT_* settings (falling back to environment variables)."""
    return PayoutConfig(
        default_commission_percent=_get_decimal_setting("PAYOUT_DEFAULT_COMMISSION_PERCENT", Decimal("20")),
        scheduler_interval_hours=float(_get_decimal_setting("PAYOUT_SCHEDULER_INTERVAL_HOURS", Decimal("24"))),
        release_events_on_failure=_get_bool_setting("PAYOUT_RELEASE_EVENTS_ON_FAILURE", default=True),
        claim_retries=int(_get_decimal_setting("PAYOUT_CLAIM_RETRIES", Decimal("1"))),
    )


def _raw_setting(key: str) -> Any:
    value = getattr(settings, key, None)
    if value is None:
        value = os.getenv(key)
    return value


def _get_decimal_setting(key: str, default: Decimal) -> Decimal:
    value = _raw_setting(key)
    if value is None or value == "":
        return default
    try:
        dec = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise PayoutConfigurationError(f"Invalid payout configuration: {key}={value!r} is not a number")
    if not dec.is_finite() or dec < 0:
        raise PayoutConfigurationError(f"Invalid payout configuration: {key}={value!r} must be >= 0")
    return dec


def _get_bool_setting(key: str, default: bool = False) -> bool:
    value = _raw_setting(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}
