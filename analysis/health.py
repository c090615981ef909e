"""
Data health check for the price index.

Scheduled scrapes fail quietly: a commodity whose page changed, or a
weekend with no new exchange day, just means no new record.  This module
looks at what is actually stored and reports the gaps.

Checks:
    - every commodity has records, and the latest is not stale
    - the latest record has a discount value for every configured tier
    - the close price isn't stuck (same value several records in a row)
    - whether a scheduled run is in progress right now

Key concepts for learning:
    - Detecting "silent failures" (data that stopped updating but nobody noticed)
    - Issues carry a severity so the CLI can print critical ones first
"""

import logging
import os
from datetime import datetime, timezone

import pandas as pd

from config import COMMODITIES, DB_PATH, FRESHNESS_WARNING_DAYS, CCR_AFTER_SCRAPE
from processing.database import get_connection, is_cloud, fetch_all, fetch_one
from processing.run_state import holder

logger = logging.getLogger(__name__)

# How many identical consecutive close prices before flagging as "flat"
_FLAT_PRICE_DAYS = 3


def run_health_check(today=None) -> dict:
    """
    Run every check against the stored series.

    Parameters
    ----------
    today : datetime.date or None
        Reference date for staleness; defaults to the current UTC date.

    Returns a dict with:
        "summary"          : str — human-readable health report
        "issues"           : list[dict] — severity, table, commodity, message
        "commodity_status" : list[dict] — per-commodity latest date, age, tiers
        "run_in_progress"  : bool
        "ccr_after_scrape" : bool
    """
    if not is_cloud() and not os.path.exists(DB_PATH):
        return {
            "summary": "DATABASE NOT FOUND — run 'python main.py run' first.",
            "issues": [{"severity": "critical", "table": "all", "commodity": "all",
                        "message": "Database does not exist"}],
            "commodity_status": [],
            "run_in_progress": False,
            "ccr_after_scrape": CCR_AFTER_SCRAPE,
        }

    today = today or datetime.now(timezone.utc).date()

    commodity_status = _build_commodity_status(today)

    issues = []
    issues.extend(_check_freshness(commodity_status))
    issues.extend(_check_discount_coverage(commodity_status))
    issues.extend(_check_flat_prices())

    held = holder()
    running = held is not None
    summary = _format_summary(issues)
    if running:
        summary += (f"\n\nA scheduled run is currently in progress "
                    f"({held['holder']} since {held['acquired_at']}).")

    return {
        "summary": summary,
        "issues": issues,
        "commodity_status": commodity_status,
        "run_in_progress": running,
        "ccr_after_scrape": CCR_AFTER_SCRAPE,
    }


def _build_commodity_status(today) -> list[dict]:
    """Latest record, row count, age and tier coverage per commodity."""
    status = []
    with get_connection() as conn:
        for commodity in COMMODITIES:
            latest = fetch_one(
                conn,
                """SELECT id, trade_date, ma30,
                          (SELECT COUNT(*) FROM market_data WHERE commodity = ?) AS cnt
                   FROM market_data WHERE commodity = ?
                   ORDER BY trade_date DESC LIMIT 1""",
                (commodity, commodity),
            )
            if latest is None:
                status.append({"commodity": commodity, "latest_date": None, "rows": 0,
                               "age_days": None, "stale": True,
                               "tiers_expected": 0, "tiers_present": 0})
                continue

            age_days = (today - pd.to_datetime(latest["trade_date"]).date()).days

            settings = fetch_one(
                conn,
                "SELECT COUNT(*) AS n FROM ma_discount_settings WHERE commodity = ?",
                (commodity,),
            )["n"]
            present = fetch_one(
                conn,
                "SELECT COUNT(*) AS n FROM ma_discount_values WHERE market_data_id = ?",
                (latest["id"],),
            )["n"]

            status.append({
                "commodity": commodity,
                "latest_date": latest["trade_date"],
                "rows": latest["cnt"],
                "age_days": age_days,
                "stale": age_days > FRESHNESS_WARNING_DAYS,
                # No ma30 yet means no tiers are expected
                "tiers_expected": settings if latest["ma30"] is not None else 0,
                "tiers_present": present,
            })
    return status


def _check_freshness(commodity_status: list[dict]) -> list[dict]:
    issues = []
    for s in commodity_status:
        if s["latest_date"] is None:
            issues.append({
                "severity": "critical",
                "table": "market_data",
                "commodity": s["commodity"],
                "message": "MISSING from market_data — no records at all",
            })
        elif s["stale"]:
            issues.append({
                "severity": "warning",
                "table": "market_data",
                "commodity": s["commodity"],
                "message": f"STALE — last trade date is {s['latest_date']} "
                           f"({s['age_days']} days ago)",
            })
    return issues


def _check_discount_coverage(commodity_status: list[dict]) -> list[dict]:
    issues = []
    for s in commodity_status:
        if s["tiers_present"] < s["tiers_expected"]:
            issues.append({
                "severity": "warning",
                "table": "ma_discount_values",
                "commodity": s["commodity"],
                "message": f"INCOMPLETE tiers for {s['latest_date']} — "
                           f"{s['tiers_present']} of {s['tiers_expected']} present",
            })
    return issues


def _check_flat_prices() -> list[dict]:
    """
    Detect commodities where the close price hasn't changed for 3+ records.
    This could mean the source is returning cached/stale data.
    """
    issues = []
    with get_connection() as conn:
        for commodity in COMMODITIES:
            rows = fetch_all(
                conn,
                "SELECT close_price FROM market_data WHERE commodity = ? "
                "ORDER BY trade_date DESC LIMIT ?",
                (commodity, _FLAT_PRICE_DAYS),
            )
            closes = pd.Series([r["close_price"] for r in rows], dtype="float").dropna()
            if len(closes) >= _FLAT_PRICE_DAYS and closes.nunique() == 1:
                issues.append({
                    "severity": "warning",
                    "table": "market_data",
                    "commodity": commodity,
                    "message": f"FLAT — same close price ({closes.iloc[0]}) "
                               f"for last {_FLAT_PRICE_DAYS} records (possible stale data)",
                })
    return issues


def _format_summary(issues: list[dict]) -> str:
    """Format issues into a human-readable health report."""
    if not issues:
        return "DATA HEALTH: All systems green — no issues detected."

    critical = [i for i in issues if i["severity"] == "critical"]
    warnings = [i for i in issues if i["severity"] == "warning"]

    lines = []
    lines.append(f"DATA HEALTH: {len(critical)} critical, {len(warnings)} warnings")
    lines.append("")

    if critical:
        lines.append("CRITICAL:")
        for issue in critical:
            lines.append(f"  [{issue['table']}] {issue['commodity']}: {issue['message']}")
        lines.append("")

    if warnings:
        lines.append("WARNINGS:")
        for issue in warnings:
            lines.append(f"  [{issue['table']}] {issue['commodity']}: {issue['message']}")

    return "\n".join(lines)
