from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Union

from vendor.payout_config import (
    FIXED,
    PERCENTAGE,
    CommissionSettings,
    ManualFeeSettings,
)

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def _to_decimal(value: Any) -> Decimal:
    return Decimal(str(value or "0"))


def _money(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _resolve_settings(settings: Optional[Any]) -> CommissionSettings:
    if isinstance(settings, CommissionSettings):
        return settings
    if settings is None:
        return CommissionSettings.fallback()
    return CommissionSettings.from_vendor(settings)


def compute_commission(amount: Union[Decimal, int, float, str], settings: Optional[Any] = None) -> Decimal:
    """
    Platform commission for a single revenue event.

    Percentage settings take value% of the amount; fixed settings charge the
    flat value once per event, capped at the event amount. ``settings`` may be a
    CommissionSettings, a vendor, or None (configured fallback percentage).
    """
    resolved = _resolve_settings(settings)
    gross = _to_decimal(amount)
    if resolved.kind == FIXED:
        return _money(min(resolved.value, gross))
    return _money(gross * resolved.value / HUNDRED)


def compute_manual_fee(vendor_or_settings: Any, requested_amount: Union[Decimal, int, float, str]) -> Decimal:
    if isinstance(vendor_or_settings, ManualFeeSettings):
        fee_settings = vendor_or_settings
    else:
        fee_settings = ManualFeeSettings.from_vendor(vendor_or_settings)

    if not fee_settings.enabled:
        return ZERO

    requested = _to_decimal(requested_amount)
    if fee_settings.kind == PERCENTAGE:
        # whole currency units
        fee = (requested * fee_settings.value / HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return _money(fee)
    return _money(fee_settings.value)


def event_commission(event, settings: Optional[Any] = None) -> Decimal:
    if event.commission_amount is not None:
        return _money(_to_decimal(event.commission_amount))
    return compute_commission(event.gross_amount, settings)


def event_net(event, settings: Optional[Any] = None) -> Decimal:
    return _money(_to_decimal(event.gross_amount) - event_commission(event, settings))
