"""
SheetCalc Currency Rates - static and live exchange rate tables.
Rates are loaded once, before any sheet is evaluated, and handed to the
expression evaluator; evaluation itself never touches the network.
"""

import logging
import os
from typing import Dict, Optional

import requests

from constants import (
    BASE_CURRENCY, FALLBACK_RATES, CURRENCY_API_URL, CURRENCY_API_TIMEOUT,
    LIVE_RATES_ENV
)

logger = logging.getLogger(__name__)


def static_rates() -> Dict[str, float]:
    """Value of one unit of each currency in BASE_CURRENCY"""
    return dict(FALLBACK_RATES)


def fetch_live_rates(url=CURRENCY_API_URL, timeout=CURRENCY_API_TIMEOUT,
                     session: Optional[requests.Session] = None) -> Dict[str, float]:
    """
    Fetch current exchange rates, falling back to the static table.

    The API quotes how many units of each currency one BASE_CURRENCY buys;
    the returned table holds the inverse (BASE_CURRENCY per unit). Currencies
    missing from the response keep their static rate.

    Args:
        url (str): exchangerate.host compatible endpoint
        timeout (float): Request timeout in seconds
        session (requests.Session): Optional session to issue the request with

    Returns:
        dict: Currency code -> value in BASE_CURRENCY
    """
    rates = static_rates()
    params = {
        "base": BASE_CURRENCY,
        "symbols": ",".join(code for code in rates if code != BASE_CURRENCY),
    }
    http = session or requests
    try:
        response = http.get(url, params=params, timeout=timeout)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("Using static currency rates, live rates unavailable: %s", e)
        return rates

    quoted = data.get("rates") if isinstance(data, dict) else None
    if not isinstance(quoted, dict):
        logger.warning("Using static currency rates, unexpected response from %s", url)
        return rates

    updated = 0
    for code in rates:
        per_base = quoted.get(code)
        if code == BASE_CURRENCY or isinstance(per_base, bool):
            continue
        if isinstance(per_base, (int, float)) and per_base > 0:
            rates[code] = 1.0 / per_base
            updated += 1
    logger.info("Loaded %d live currency rates", updated)
    return rates


def live_rates_enabled() -> bool:
    return os.environ.get(LIVE_RATES_ENV, "").strip().lower() in ("1", "true", "yes", "on")


def load_rates(live: Optional[bool] = None) -> Dict[str, float]:
    """Static rates, or live ones when `live` (default: SHEETCALC_LIVE_RATES) is set"""
    if live is None:
        live = live_rates_enabled()
    return fetch_live_rates() if live else static_rates()
