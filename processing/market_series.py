"""
Market series writer — turns one cleaned quote into a stored market record.

Each successful scrape appends exactly one row to ``market_data`` for its
commodity and trade date.  Besides the raw exchange prices, the row
carries statistics that depend on the rows before it:

    ma30            mean close of up to MA_WINDOW prior records
    ma30_change     ma30 minus the latest prior non-null ma30
    change_percent  price_change / previous_close * 100
    idr_*           the above converted to IDR/kg at today's FX rate

Rounding: raw prices, IDR prices and the change fields are stored with two
decimals; ma30 and idr_ma30 keep full precision because the discount tiers
are computed from them.

The discount tiers for the new record are generated in the same
transaction as the insert (see processing.discounts), so a stored record
always has its tiers.
"""

import logging
from datetime import datetime, timezone

import pandas as pd

from config import COMMODITIES, MA_WINDOW
from data.fetchers.fx_fetcher import fetch_idr_rate
from processing.database import get_connection, transaction, fetch_one
from processing.discounts import generate_tiers
from processing.units import to_idr, native_label

logger = logging.getLogger(__name__)


class DuplicateDateError(Exception):
    """A record already exists for this commodity and trade date."""

    def __init__(self, commodity: str, trade_date: str):
        super().__init__(f"{commodity} already has a record for {trade_date}")
        self.commodity = commodity
        self.trade_date = trade_date


_INSERT_COLUMNS = [
    "commodity", "trade_date",
    "open_price", "high_price", "low_price", "close_price",
    "previous_close", "price_change", "change_percent",
    "volume", "open_interest",
    "ma30", "ma30_change",
    "idr_price", "idr_ma30", "idr_price_change", "idr_ma30_change", "idr_rate",
    "unit_label", "created_at",
]


def _round2(value: float | None) -> float | None:
    return None if value is None else round(value, 2)


def moving_average(closes) -> float | None:
    """
    Arithmetic mean of the numeric entries in ``closes``.

    Non-numeric entries are skipped; None when nothing usable is left.
    """
    prices = pd.to_numeric(pd.Series(closes, dtype="object"), errors="coerce").dropna()
    if prices.empty:
        return None
    return float(prices.mean())


def change_percent(price_change: float | None, previous_close: float | None) -> float:
    """price_change / previous_close * 100, or 0 when previous_close is 0/missing."""
    if not previous_close or price_change is None:
        return 0.0
    return price_change / previous_close * 100


def record_exists(conn, commodity: str, trade_date: str) -> bool:
    row = fetch_one(
        conn,
        "SELECT id FROM market_data WHERE commodity = ? AND trade_date = ?",
        (commodity, trade_date),
    )
    return row is not None


def _prior_closes(conn, commodity: str, trade_date: str) -> pd.Series:
    """Close prices of up to MA_WINDOW records before ``trade_date``, newest first."""
    df = pd.read_sql(
        """SELECT close_price FROM market_data
           WHERE commodity = ? AND trade_date < ?
           ORDER BY trade_date DESC
           LIMIT ?""",
        conn,
        params=(commodity, trade_date, MA_WINDOW),
    )
    return df["close_price"]


def _previous_ma30(conn, commodity: str, trade_date: str) -> float | None:
    row = fetch_one(
        conn,
        """SELECT ma30 FROM market_data
           WHERE commodity = ? AND trade_date < ? AND ma30 IS NOT NULL
           ORDER BY trade_date DESC
           LIMIT 1""",
        (commodity, trade_date),
    )
    return None if row is None else row["ma30"]


def build_record(commodity: str, quote: dict, usd_idr: float,
                 prior_closes, previous_ma30: float | None) -> dict:
    """
    Compute every stored field of a market record.

    Pure function: all history it needs is passed in, nothing is read
    or written here.
    """
    ma30 = moving_average(prior_closes)
    ma30_change = 0.0
    if ma30 is not None and previous_ma30 is not None:
        ma30_change = ma30 - previous_ma30

    close = quote["close"]
    price_change = quote.get("price_change")
    previous_close = quote.get("previous_close")

    return {
        "commodity": commodity,
        "trade_date": quote["trade_date"],
        "open_price": _round2(quote.get("open")),
        "high_price": _round2(quote.get("high")),
        "low_price": _round2(quote.get("low")),
        "close_price": _round2(close),
        "previous_close": _round2(previous_close),
        "price_change": _round2(price_change),
        "change_percent": _round2(change_percent(price_change, previous_close)),
        "volume": quote.get("volume"),
        "open_interest": quote.get("open_interest"),
        "ma30": ma30,
        "ma30_change": _round2(ma30_change),
        "idr_price": _round2(to_idr(close, commodity, usd_idr)),
        "idr_ma30": to_idr(ma30, commodity, usd_idr),
        "idr_price_change": _round2(to_idr(price_change, commodity, usd_idr)),
        "idr_ma30_change": _round2(to_idr(ma30_change, commodity, usd_idr)),
        "idr_rate": _round2(usd_idr),
        "unit_label": native_label(commodity),
        "created_at": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
    }


def ingest(commodity: str, quote: dict, rate_fetcher=fetch_idr_rate) -> dict:
    """
    Store one cleaned quote as the next market record for ``commodity``.

    Parameters
    ----------
    commodity : str
        "ARABICA" or "ROBUSTA".
    quote : dict
        Output of processing.cleaner.clean_quote().
    rate_fetcher : callable
        Returns the USD→IDR rate.  Defaults to the live FX fetcher.

    Returns
    -------
    dict
        The stored record, including its database ``id``.

    Raises
    ------
    DuplicateDateError
        If a record already exists for (commodity, trade date).  Nothing
        is written in that case.
    """
    if commodity not in COMMODITIES:
        raise ValueError(f"Unknown commodity: {commodity}")

    trade_date = quote["trade_date"]

    with get_connection() as conn:
        if record_exists(conn, commodity, trade_date):
            raise DuplicateDateError(commodity, trade_date)

        usd_idr = rate_fetcher()
        prior_closes = _prior_closes(conn, commodity, trade_date)
        record = build_record(
            commodity, quote, usd_idr, prior_closes,
            _previous_ma30(conn, commodity, trade_date),
        )

        placeholders = ", ".join("?" for _ in _INSERT_COLUMNS)
        try:
            # Record and tiers land together or not at all
            with transaction(conn):
                cursor = conn.execute(
                    f"INSERT INTO market_data ({', '.join(_INSERT_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    tuple(record[col] for col in _INSERT_COLUMNS),
                )
                record["id"] = cursor.lastrowid
                tiers = generate_tiers(record, conn=conn)
        except Exception as exc:
            record.pop("id", None)
            # Another run stored the same day between our check and insert.
            # sqlite3 and libsql report the constraint with different types.
            if record_exists(conn, commodity, trade_date):
                raise DuplicateDateError(commodity, trade_date) from exc
            raise

    if record["ma30"] is None:
        logger.info("%s %s stored (no prior history, ma30 not available)",
                    commodity, trade_date)
    else:
        logger.info("%s %s stored: close %.2f, %d-record MA %.4f, %d tier(s)",
                    commodity, trade_date, record["close_price"],
                    len(prior_closes), record["ma30"], len(tiers))

    return record
