"""Minor-unit amount and currency helpers."""

import re
from typing import Any, Dict, Optional

from .errors import InvalidAmountError, InvalidCurrencyError

DEFAULT_CURRENCY = "gbp"

# Provider minimum chargeable amounts, in minor units.
MINIMUM_CHARGE_AMOUNTS: Dict[str, int] = {
    "usd": 50,
    "aud": 50,
    "brl": 50,
    "cad": 50,
    "chf": 50,
    "dkk": 250,
    "eur": 50,
    "gbp": 50,
    "hkd": 400,
    "jpy": 50,
    "mxn": 1000,
    "nok": 300,
    "nzd": 50,
    "pln": 200,
    "sek": 300,
    "sgd": 50,
}

DEFAULT_MINIMUM_CHARGE_AMOUNT = 50

_CURRENCY_RE = re.compile(r"^[a-z]{3}$")


def ensure_minor_units(amount: Any) -> int:
    """Return ``amount`` unchanged if it is an integer, else raise.

    Floats are rejected even when integral: a float reaching this layer
    means the caller mixed major and minor units.
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(amount)
    return amount


def normalize_currency(currency: Any) -> str:
    """Lowercase and validate an ISO 4217 currency code."""
    if not isinstance(currency, str):
        raise InvalidCurrencyError(currency)
    normalized = currency.strip().lower()
    if not _CURRENCY_RE.match(normalized):
        raise InvalidCurrencyError(currency)
    return normalized


def minimum_charge_amount(
    currency: str,
    overrides: Optional[Dict[str, int]] = None,
) -> int:
    """Minimum chargeable amount for ``currency`` in minor units."""
    if overrides and currency in overrides:
        return overrides[currency]
    return MINIMUM_CHARGE_AMOUNTS.get(currency, DEFAULT_MINIMUM_CHARGE_AMOUNT)
