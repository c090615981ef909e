"""
Discount tiers — per-grade discounted MA30 values for one market record.

Lower coffee grades are valued at a configured percentage below the MA30.
Every discount setting (commodity, grade, percent) produces one tier
value per market record:

    discounted_ma30      = ma30     * (1 - discount / 100)
    discounted_idr_ma30  = idr_ma30 * (1 - discount / 100)
    *_movement           = this value - the same setting's value on the
                           latest earlier trade date (0 if there is none)

Tier values are write-once: if one already exists for a record/setting
pair it is left alone.  All new values for a record are written in a
single transaction.
"""

import logging
from datetime import datetime, timezone

from processing.database import get_connection, transaction, fetch_one
from processing.combiner import read_discount_settings

logger = logging.getLogger(__name__)


def discounted(value: float | None, discount_pct: float) -> float | None:
    """``value`` reduced by ``discount_pct`` percent; None stays None."""
    if value is None:
        return None
    return value - value * discount_pct / 100


def _previous_tier(conn, setting_id: int, commodity: str, trade_date: str) -> dict | None:
    """The same setting's tier on the latest trade date before ``trade_date``."""
    return fetch_one(
        conn,
        """SELECT v.discounted_ma30, v.discounted_idr_ma30
           FROM ma_discount_values v
           JOIN market_data m ON m.id = v.market_data_id
           WHERE v.setting_id = ? AND m.commodity = ? AND m.trade_date < ?
           ORDER BY m.trade_date DESC
           LIMIT 1""",
        (setting_id, commodity, trade_date),
    )


def _tier_exists(conn, market_data_id: int, setting_id: int) -> bool:
    row = fetch_one(
        conn,
        "SELECT id FROM ma_discount_values WHERE market_data_id = ? AND setting_id = ?",
        (market_data_id, setting_id),
    )
    return row is not None


def _movement(current: float | None, previous: float | None) -> float:
    if current is None or previous is None:
        return 0.0
    return current - previous


def _round2(value: float | None) -> float | None:
    return None if value is None else round(value, 2)


def _write_tiers(conn, record: dict) -> list[dict]:
    commodity = record["commodity"]
    settings = read_discount_settings(commodity, conn=conn)
    if not settings:
        logger.info("%s: no discount settings configured", commodity)
        return []

    created_at = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    written = []
    for setting in settings:
        if _tier_exists(conn, record["id"], setting["id"]):
            logger.debug("Tier for record %s / setting %s exists — skipped",
                         record["id"], setting["id"])
            continue

        pct = setting["discount"]
        value = discounted(record["ma30"], pct)
        idr_value = discounted(record.get("idr_ma30"), pct)

        previous = _previous_tier(conn, setting["id"], commodity, record["trade_date"])
        prev_value = previous["discounted_ma30"] if previous else None
        prev_idr_value = previous["discounted_idr_ma30"] if previous else None

        tier = {
            "market_data_id": record["id"],
            "setting_id": setting["id"],
            "grade": setting["grade"],
            "discount_percentage": pct,
            "discounted_ma30": _round2(value),
            "discounted_idr_ma30": _round2(idr_value),
            "discounted_ma30_movement": _round2(_movement(value, prev_value)),
            "discounted_idr_ma30_movement": _round2(_movement(idr_value, prev_idr_value)),
            "created_at": created_at,
        }
        conn.execute(
            f"INSERT INTO ma_discount_values ({', '.join(tier)}) "
            f"VALUES ({', '.join('?' for _ in tier)})",
            tuple(tier.values()),
        )
        written.append(tier)
    return written


def generate_tiers(record: dict, conn=None) -> list[dict]:
    """
    Create the discount tier values for a freshly stored market record.

    Parameters
    ----------
    record : dict
        A stored market record; needs id, commodity, trade_date, ma30
        and idr_ma30.
    conn : connection or None
        An open connection with a transaction in progress (the one that
        inserted ``record``).  The tiers then commit or roll back with
        it.  When None, a connection and transaction of its own are used.

    Returns
    -------
    list[dict]
        The tier values written (empty when the record has no ma30, the
        commodity has no settings, or every tier already exists).
    """
    if record.get("ma30") is None:
        logger.info("%s %s: no ma30 yet — skipping discount tiers",
                    record["commodity"], record["trade_date"])
        return []

    if conn is not None:
        written = _write_tiers(conn, record)
    else:
        with get_connection() as conn:
            with transaction(conn):
                written = _write_tiers(conn, record)

    logger.info("%s %s: %d discount tier(s) written",
                record["commodity"], record["trade_date"], len(written))
    return written
