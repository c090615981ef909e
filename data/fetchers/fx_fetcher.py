"""
USD → IDR exchange rate from exchangerate-api.com (no API key).

Every market record stores its prices converted to IDR/kg, so each
ingestion needs a current rate.  The rate is "nice to have fresh" rather
than critical: if the service is down or answers with something we can't
read, we fall back to a fixed rate and carry on.

Key concepts:
    - The function never raises — callers treat the result as always valid
    - No retry here; the outer scrape retries the whole run if needed
    - logging.warning() flags every time the fallback kicks in
"""

import json
import logging

import requests

from config import FX_RATE_URL, FX_TARGET_CURRENCY, FX_FALLBACK_RATE, REQUEST_TIMEOUT

logger = logging.getLogger(__name__)


def fetch_idr_rate() -> float:
    """
    Fetch the current USD→IDR rate.

    Returns
    -------
    float
        A positive exchange rate.  FX_FALLBACK_RATE when the request fails,
        the response is not JSON, or the rate is missing / not positive.
    """
    try:
        resp = requests.get(FX_RATE_URL, timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()
        rate = float(resp.json()["rates"][FX_TARGET_CURRENCY])
        if rate <= 0:
            raise ValueError(f"non-positive rate {rate}")
        logger.info("USD/%s rate: %.2f", FX_TARGET_CURRENCY, rate)
        return rate

    except (requests.RequestException, json.JSONDecodeError,
            KeyError, TypeError, ValueError) as exc:
        logger.warning(
            "Failed to fetch %s rate (%s) — using fallback %.2f",
            FX_TARGET_CURRENCY, exc, FX_FALLBACK_RATE,
        )
        return FX_FALLBACK_RATE


# ── Quick self-test ─────────────────────────────────────────────────
if __name__ == "__main__":
    from config import setup_logging
    setup_logging(log_dir=None)

    logger.info("USD/IDR = %.2f", fetch_idr_rate())
