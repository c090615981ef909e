"""
Quote cleaning utilities.

The intercepted Barchart row is loosely typed: numbers may arrive as
numbers or strings, and the trade date is a bare ISO date.  This module
normalises one row into the flat, numeric shape the market series writer
works with, before anything touches the database.

Key concepts:
    - pd.to_numeric(errors="coerce") turns junk into NaN instead of crashing
    - The trade date is the exchange day the quote reflects ("1d ago"),
      pinned to UTC midnight — NOT the day the scrape ran
    - logging.warning() flags unusual data without blocking the pipeline
"""

import logging
import math

import pandas as pd

logger = logging.getLogger(__name__)

# Barchart raw field → our field
_PRICE_FIELDS = {
    "dailyOpenPrice":     "open",
    "dailyHighPrice":     "high",
    "dailyLowPrice":      "low",
    "dailyLastPrice":     "close",
    "dailyPreviousPrice": "previous_close",
    "dailyPriceChange":   "price_change",
}

_COUNT_FIELDS = {
    "dailyVolume":       "volume",
    "dailyOpenInterest": "open_interest",
}


def _to_number(value) -> float | None:
    """Coerce a raw value to float; None for anything non-numeric."""
    number = pd.to_numeric(value, errors="coerce")
    try:
        number = float(number)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def trade_date_from(value) -> str:
    """
    Normalise a quote date to an ISO date string at UTC midnight.

    Raises
    ------
    ValueError
        If the value is empty or not a date.
    """
    if not value:
        raise ValueError("quote has no trade date")
    stamp = pd.Timestamp(value)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize("UTC")
    else:
        stamp = stamp.tz_convert("UTC")
    return stamp.normalize().strftime("%Y-%m-%d")


def _validate_quote(quote: dict, label: str = ""):
    """
    Run sanity checks on a cleaned quote and log warnings for suspicious values.

    These are warnings only — they don't block the pipeline.
    """
    prefix = f"[{label}] " if label else ""

    previous = quote.get("previous_close")
    change = quote.get("price_change")
    if previous and change is not None and abs(change / previous) > 0.10:
        logger.warning(
            "%sLarge price move on %s: %.1f%% change (verify data integrity)",
            prefix, quote["trade_date"], change / previous * 100,
        )

    high, low = quote.get("high"), quote.get("low")
    if high is not None and low is not None and high < low:
        logger.warning("%sHigh %.2f below low %.2f on %s", prefix, high, low, quote["trade_date"])

    volume = quote.get("volume")
    if volume is not None and volume <= 0:
        logger.warning("%sZero/negative volume on %s (possible data gap)",
                       prefix, quote["trade_date"])


def clean_quote(row: dict) -> dict:
    """
    Flatten a raw Barchart quote row into numbers.

    Parameters
    ----------
    row : dict
        ``{"symbol": "RMH26", "raw": {"dailyLastPrice": ..., ...}}``

    Returns
    -------
    dict
        symbol, trade_date, open, high, low, close, previous_close,
        price_change (floats or None), volume, open_interest (ints or None).

    Raises
    ------
    ValueError
        If the row has no raw block, no usable close price, or no trade date.
    """
    raw = row.get("raw") if isinstance(row, dict) else None
    if not isinstance(raw, dict):
        raise ValueError(f"quote row has no 'raw' block: {row!r}")

    quote = {
        "symbol": row.get("symbol"),
        "trade_date": trade_date_from(raw.get("dailyDate1dAgo")),
    }
    for source, target in _PRICE_FIELDS.items():
        quote[target] = _to_number(raw.get(source))
    for source, target in _COUNT_FIELDS.items():
        number = _to_number(raw.get(source))
        quote[target] = int(number) if number is not None else None

    if quote["close"] is None:
        raise ValueError(f"quote {quote['symbol']} has no usable last price: {raw!r}")

    _validate_quote(quote, label=quote["symbol"] or "")
    return quote
