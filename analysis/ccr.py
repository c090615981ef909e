"""
Collateral Coverage Ratio (CCR) per farmer, shelter, warehouse and platform.

    CCR = value of stored, document-verified coffee / outstanding loans

Stock is bucketed by commodity × grade (2 × 5 buckets).  Each bucket is
valued at the latest discounted IDR MA30 for that commodity and grade,
so lower grades count for less.  Loans are the amounts currently raised
by the crowdfunding campaigns funding the inventory.

The four scopes only differ in which inventory rows belong to them, so
they share one implementation parameterised by the SCOPES table.

Key concepts:
    - CCR is 0 when there is no loan (no division by zero)
    - A campaign that can't be read is logged and left out of the loan
      total; the rest still count
    - Updating a scope writes the entity's ccr and a history snapshot in
      one transaction, so the two never disagree
"""

import logging
from datetime import datetime, timezone

import pandas as pd

from config import COMMODITIES, GRADES, CCR_AUTO_REASON
from data.fetchers.ledger_fetcher import current_loan_amount
from processing.database import get_connection, transaction, savepoint, fetch_all, fetch_one

logger = logging.getLogger(__name__)

# scope → entity table, inventory column naming the owner, and which
# inventory rows make something an owner of that kind
SCOPES = {
    "farmer": {
        "table": "farmers",
        "column": "farmer_id",
        # delivered by the farmer directly, not bought out
        "members": "farmer_id IS NOT NULL AND shelter_id IS NULL AND bought_out = 0",
    },
    "shelter": {
        "table": "shelters",
        "column": "shelter_id",
        "members": "shelter_id IS NOT NULL AND bought_out = 0",
    },
    "warehouse": {
        "table": "warehouses",
        "column": "warehouse_id",
        "members": "warehouse_id IS NOT NULL AND bought_out = 1",
    },
    "platform": {
        "table": None,
        "column": None,
        "members": None,
    },
}

# Inventory that counts as collateral at all
_COLLATERAL_FILTER = (
    "i.deleted_at IS NULL AND i.document_id IS NOT NULL "
    f"AND i.commodity_type IN ({', '.join('?' for _ in COMMODITIES)}) "
    f"AND i.grade IN ({', '.join('?' for _ in GRADES)})"
)
_COLLATERAL_PARAMS = (
    tuple(c["inventory_name"] for c in COMMODITIES.values()) + tuple(GRADES.values())
)

_COMMODITY_BY_NAME = {c["inventory_name"]: key for key, c in COMMODITIES.items()}
_GRADE_BY_NAME = {name: key for key, name in GRADES.items()}


def _scope(scope: str) -> dict:
    if scope not in SCOPES:
        raise ValueError(f"Unknown CCR scope: {scope} (expected one of {list(SCOPES)})")
    return SCOPES[scope]


def _owner_filter(scope: str, scope_id) -> tuple[str, tuple]:
    """Extra WHERE clause (on alias i) limiting inventory to one owner."""
    column = _scope(scope)["column"]
    if column is None:
        return "", ()
    if scope_id is None:
        raise ValueError(f"A {scope} id is required")
    return f" AND i.{column} = ?", (scope_id,)


def get_stocks(conn, scope: str, scope_id=None) -> pd.DataFrame:
    """
    Net stock (inbound − outbound) per commodity and grade for one scope.

    Returns a DataFrame with one row per commodity × grade (all ten, zero
    where nothing is stored): commodity, grade, stock.
    """
    where, params = _owner_filter(scope, scope_id)
    df = pd.read_sql(
        f"SELECT i.commodity_type, i.grade, i.inbound, i.outbound "
        f"FROM inventory i WHERE {_COLLATERAL_FILTER}{where}",
        conn,
        params=_COLLATERAL_PARAMS + params,
    )

    grid = pd.MultiIndex.from_product(
        [list(COMMODITIES), list(GRADES)], names=["commodity", "grade"],
    )
    if df.empty:
        stocks = pd.Series(0.0, index=grid, name="stock")
    else:
        df["commodity"] = df["commodity_type"].map(_COMMODITY_BY_NAME)
        df["grade"] = df["grade"].map(_GRADE_BY_NAME)
        df["stock"] = df["inbound"] - df["outbound"]
        stocks = (
            df.groupby(["commodity", "grade"])["stock"].sum()
            .reindex(grid, fill_value=0.0)
        )
    return stocks.astype(float).reset_index()


def get_stock_prices(conn) -> dict:
    """
    Latest discounted IDR MA30 per (commodity, grade), 0 where none exists.

    "Latest" is by creation time of the tier value.
    """
    rows = fetch_all(
        conn,
        """SELECT m.commodity, v.grade, v.discounted_idr_ma30
           FROM ma_discount_values v
           JOIN market_data m ON m.id = v.market_data_id
           ORDER BY v.created_at DESC, v.id DESC""",
    )
    prices = {(c, g): 0.0 for c in COMMODITIES for g in GRADES}
    seen = set()
    for row in rows:
        key = (row["commodity"], row["grade"])
        if key in prices and key not in seen:
            prices[key] = row["discounted_idr_ma30"] or 0.0
            seen.add(key)
    return prices


def _campaign_ids(conn, scope: str, scope_id=None) -> list:
    where, params = _owner_filter(scope, scope_id)
    rows = fetch_all(
        conn,
        f"""SELECT f.campaign_id
            FROM inventory_funding f
            JOIN inventory i ON i.id = f.inventory_id
            WHERE f.deleted_at IS NULL AND f.campaign_id IS NOT NULL
              AND i.deleted_at IS NULL{where}""",
        params,
    )
    return [row["campaign_id"] for row in rows]


def total_loan(campaign_ids, ledger=current_loan_amount) -> float:
    """Sum of current campaign amounts; unreadable campaigns are skipped."""
    total = 0.0
    for campaign_id in campaign_ids:
        try:
            total += ledger(int(campaign_id))
        except Exception:
            logger.error("Error fetching campaign %s — left out of loan total",
                         campaign_id, exc_info=True)
    return total


def coverage_ratio(total_stock_value: float, loan: float) -> float:
    return total_stock_value / loan if loan > 0 else 0.0


def compute_ccr(scope: str, scope_id=None, ledger=current_loan_amount, conn=None) -> dict:
    """
    Compute the CCR of one farmer / shelter / warehouse, or the platform.

    Parameters
    ----------
    scope : str
        "farmer", "shelter", "warehouse" or "platform".
    scope_id : str or None
        Owner id; ignored for "platform".
    ledger : callable
        campaign id → current loan amount in IDR.

    Returns
    -------
    dict
        ccr, total_stock_value, total_loan, total_stock, stock_arabica,
        stock_robusta, idr_ma30_arabica, idr_ma30_robusta (grade 1 prices)
        and breakdown (list of commodity/grade/stock/idr_ma30_price/value).
    """
    if conn is None:
        with get_connection() as conn:
            return compute_ccr(scope, scope_id, ledger=ledger, conn=conn)

    stocks = get_stocks(conn, scope, scope_id)
    prices = get_stock_prices(conn)
    stocks["idr_ma30_price"] = [
        prices[(c, g)] for c, g in zip(stocks["commodity"], stocks["grade"])
    ]
    stocks["value"] = stocks["stock"] * stocks["idr_ma30_price"]

    total_stock_value = float(stocks["value"].sum())
    loan = total_loan(_campaign_ids(conn, scope, scope_id), ledger=ledger)
    per_commodity = stocks.groupby("commodity")["stock"].sum()

    return {
        "scope": scope,
        "scope_id": scope_id,
        "ccr": coverage_ratio(total_stock_value, loan),
        "total_stock_value": total_stock_value,
        "total_loan": loan,
        "total_stock": float(stocks["stock"].sum()),
        "stock_arabica": float(per_commodity.get("ARABICA", 0.0)),
        "stock_robusta": float(per_commodity.get("ROBUSTA", 0.0)),
        "idr_ma30_arabica": prices[("ARABICA", "GRADE_1")],
        "idr_ma30_robusta": prices[("ROBUSTA", "GRADE_1")],
        "breakdown": stocks.to_dict("records"),
    }


def _set_entity_ccr(conn, scope: str, scope_id, ccr: float):
    table = _scope(scope)["table"]
    if table is None:
        return
    cursor = conn.execute(f"UPDATE {table} SET ccr = ? WHERE id = ?", (ccr, scope_id))
    if cursor.rowcount == 0:
        raise LookupError(f"No {scope} with id {scope_id}")


def _insert_history(conn, result: dict, reason: str) -> int:
    cursor = conn.execute(
        """INSERT INTO ccr_history
           (scope, scope_id, ccr, stock_arabica, stock_robusta,
            idr_ma30_arabica, idr_ma30_robusta, total_stock_value,
            loan_total, reason, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            result["scope"], result["scope_id"], result["ccr"],
            result["stock_arabica"], result["stock_robusta"],
            result["idr_ma30_arabica"], result["idr_ma30_robusta"],
            result["total_stock_value"], result["total_loan"], reason,
            datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
        ),
    )
    return cursor.lastrowid


def _insert_grades(conn, history_id: int, breakdown: list[dict]):
    conn.executemany(
        """INSERT INTO ccr_history_grades
           (history_id, commodity, grade, stock, idr_ma30_price)
           VALUES (?, ?, ?, ?, ?)""",
        [(history_id, b["commodity"], b["grade"], b["stock"], b["idr_ma30_price"])
         for b in breakdown],
    )


def _record(conn, scope: str, scope_id, reason: str, ledger) -> dict:
    """Compute, store the entity's ccr and append the history snapshot."""
    result = compute_ccr(scope, scope_id, ledger=ledger, conn=conn)
    _set_entity_ccr(conn, scope, scope_id, result["ccr"])
    result["history_id"] = _insert_history(conn, result, reason)
    _insert_grades(conn, result["history_id"], result["breakdown"])
    return result


def update_ccr(scope: str, scope_id=None, reason: str = CCR_AUTO_REASON,
               ledger=current_loan_amount) -> dict:
    """
    Recalculate one scope's CCR, store it and log a history snapshot.

    Entity update and history insert happen atomically.  Returns the
    compute_ccr() result plus ``history_id``.
    """
    _scope(scope)
    with get_connection() as conn:
        with transaction(conn):
            result = _record(conn, scope, scope_id, reason, ledger)

    logger.info("CCR %s %s = %.4f (stock value %.2f / loan %.2f)",
                scope, scope_id or "", result["ccr"],
                result["total_stock_value"], result["total_loan"])
    return result


def list_scope_ids(conn, scope: str) -> list:
    """Every owner of this kind with verified, non-deleted inventory."""
    scope_def = _scope(scope)
    if scope_def["column"] is None:
        return [None]
    rows = fetch_all(
        conn,
        f"""SELECT DISTINCT i.{scope_def['column']} AS scope_id
            FROM inventory i
            WHERE i.deleted_at IS NULL AND i.document_id IS NOT NULL
              AND {scope_def['members']}
            ORDER BY scope_id""",
    )
    return [row["scope_id"] for row in rows]


def update_all_ccr(scope: str, reason: str = CCR_AUTO_REASON,
                   ledger=current_loan_amount) -> dict:
    """
    Recalculate the CCR of every owner in a scope, in one transaction.

    Each owner is written inside its own savepoint: an owner that fails is
    logged, its partial writes are undone, and the loop moves on.

    Returns
    -------
    dict
        status, message, updated (list of {"id", "ccr"}), failed (ids).
    """
    updated, failed = [], []

    with get_connection() as conn:
        with transaction(conn):
            for scope_id in list_scope_ids(conn, scope):
                try:
                    with savepoint(conn, "ccr_scope"):
                        result = _record(conn, scope, scope_id, reason, ledger)
                    updated.append({"id": scope_id, "ccr": result["ccr"]})
                except Exception:
                    logger.error("Error updating CCR for %s %s", scope, scope_id,
                                 exc_info=True)
                    failed.append(scope_id)

    message = f"{len(updated)} {scope} CCR(s) updated"
    if failed:
        message += f", {len(failed)} failed"
    logger.info(message)
    return {
        "status": "success",
        "message": message,
        "updated": updated,
        "failed": failed,
    }


def latest_ccr(scope: str, scope_id=None) -> dict | None:
    """Most recent history snapshot for a scope, or None."""
    with get_connection() as conn:
        if scope_id is None:
            return fetch_one(
                conn,
                "SELECT * FROM ccr_history WHERE scope = ? AND scope_id IS NULL "
                "ORDER BY id DESC LIMIT 1",
                (scope,),
            )
        return fetch_one(
            conn,
            "SELECT * FROM ccr_history WHERE scope = ? AND scope_id = ? "
            "ORDER BY id DESC LIMIT 1",
            (scope, scope_id),
        )
