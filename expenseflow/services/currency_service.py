"""Currency conversion into the company base currency (display only)."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict

import requests

logger = logging.getLogger(__name__)

EXCHANGE_API_URL = "https://api.exchangerate-api.com/v4/latest/{base}"


def fetch_exchange_rates(base_currency: str) -> Dict[str, float]:
    """Fetch exchange rates for the given base currency."""
    try:
        response = requests.get(EXCHANGE_API_URL.format(base=base_currency.upper()), timeout=10)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning(f"Exchange rate lookup for {base_currency} failed: {str(e)}")
        return {}

    return payload.get("rates", {})


def convert_currency(amount: Decimal | float, source_currency: str, target_currency: str) -> Decimal:
    """Convert an amount between currencies; keeps the original amount when no rate is known."""
    if source_currency.upper() == target_currency.upper():
        return Decimal(str(amount))

    rates = fetch_exchange_rates(source_currency)
    rate = rates.get(target_currency.upper())
    if not rate:
        return Decimal(str(amount))

    converted = Decimal(str(rate)) * Decimal(str(amount))
    return converted.quantize(Decimal("0.01"))
