"""
Schema and shared read/write helpers for the price index database.

The market series, the discount tiers derived from it, and the lending
side (inventories, fundings, farmers/shelters/warehouses and their CCR
history) all live in one relational store.  This module owns the table
definitions and the small helpers other modules and the tests share.

Key concepts:
    - UNIQUE constraints back the "one record per commodity per trade
      date" and "one tier value per record per setting" rules
    - Dates are stored as ISO strings (YYYY-MM-DD) so they sort correctly
    - Read helpers return pandas DataFrames for analysis and reporting
"""

import logging

import pandas as pd

from processing.database import get_connection, fetch_all

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# SQL schemas
# ---------------------------------------------------------------------------
_CREATE_MARKET_DATA = """
CREATE TABLE IF NOT EXISTS market_data (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    commodity           TEXT    NOT NULL,
    trade_date          TEXT    NOT NULL,
    open_price          REAL,
    high_price          REAL,
    low_price           REAL,
    close_price         REAL,
    previous_close      REAL,
    price_change        REAL,
    change_percent      REAL,
    volume              INTEGER,
    open_interest       INTEGER,
    ma30                REAL,
    ma30_change         REAL,
    idr_price           REAL,
    idr_ma30            REAL,
    idr_price_change    REAL,
    idr_ma30_change     REAL,
    idr_rate            REAL,
    unit_label          TEXT,
    created_at          TEXT    NOT NULL,
    UNIQUE (commodity, trade_date)
);
"""

_CREATE_DISCOUNT_SETTINGS = """
CREATE TABLE IF NOT EXISTS ma_discount_settings (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    commodity   TEXT    NOT NULL,
    grade       TEXT    NOT NULL,
    discount    REAL    NOT NULL
);
"""

_CREATE_DISCOUNT_VALUES = """
CREATE TABLE IF NOT EXISTS ma_discount_values (
    id                              INTEGER PRIMARY KEY AUTOINCREMENT,
    market_data_id                  INTEGER NOT NULL REFERENCES market_data (id),
    setting_id                      INTEGER NOT NULL REFERENCES ma_discount_settings (id),
    grade                           TEXT    NOT NULL,
    discount_percentage             REAL    NOT NULL,
    discounted_ma30                 REAL,
    discounted_idr_ma30             REAL,
    discounted_ma30_movement        REAL,
    discounted_idr_ma30_movement    REAL,
    created_at                      TEXT    NOT NULL,
    UNIQUE (market_data_id, setting_id)
);
"""

_CREATE_FARMERS = """
CREATE TABLE IF NOT EXISTS farmers (
    id      TEXT    NOT NULL PRIMARY KEY,
    name    TEXT,
    ccr     REAL    NOT NULL DEFAULT 0
);
"""

_CREATE_SHELTERS = """
CREATE TABLE IF NOT EXISTS shelters (
    id      TEXT    NOT NULL PRIMARY KEY,
    name    TEXT,
    ccr     REAL    NOT NULL DEFAULT 0
);
"""

_CREATE_WAREHOUSES = """
CREATE TABLE IF NOT EXISTS warehouses (
    id      TEXT    NOT NULL PRIMARY KEY,
    name    TEXT,
    ccr     REAL    NOT NULL DEFAULT 0
);
"""

# One row per stored lot.  farmer_id / shelter_id describe how the lot
# came in; bought_out marks lots the warehouse purchased outright.
_CREATE_INVENTORY = """
CREATE TABLE IF NOT EXISTS inventory (
    id              TEXT    NOT NULL PRIMARY KEY,
    warehouse_id    TEXT,
    farmer_id       TEXT,
    shelter_id      TEXT,
    bought_out      INTEGER NOT NULL DEFAULT 0,
    commodity_type  TEXT    NOT NULL,
    grade           TEXT    NOT NULL,
    inbound         REAL    NOT NULL DEFAULT 0,
    outbound        REAL    NOT NULL DEFAULT 0,
    document_id     TEXT,
    deleted_at      TEXT
);
"""

_CREATE_INVENTORY_FUNDING = """
CREATE TABLE IF NOT EXISTS inventory_funding (
    id              TEXT    NOT NULL PRIMARY KEY,
    inventory_id    TEXT    NOT NULL REFERENCES inventory (id),
    campaign_id     INTEGER,
    deleted_at      TEXT
);
"""

_CREATE_CCR_HISTORY = """
CREATE TABLE IF NOT EXISTS ccr_history (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    scope               TEXT    NOT NULL,
    scope_id            TEXT,
    ccr                 REAL    NOT NULL,
    stock_arabica       REAL,
    stock_robusta       REAL,
    idr_ma30_arabica    REAL,
    idr_ma30_robusta    REAL,
    total_stock_value   REAL,
    loan_total          REAL,
    reason              TEXT,
    created_at          TEXT    NOT NULL
);
"""

_CREATE_CCR_HISTORY_GRADES = """
CREATE TABLE IF NOT EXISTS ccr_history_grades (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    history_id      INTEGER NOT NULL REFERENCES ccr_history (id),
    commodity       TEXT    NOT NULL,
    grade           TEXT    NOT NULL,
    stock           REAL,
    idr_ma30_price  REAL
);
"""

# One row per named run currently holding its lock.  Lives in the shared
# store so separate processes (and hosts, on Turso) see the same state.
_CREATE_RUN_STATE = """
CREATE TABLE IF NOT EXISTS run_state (
    name        TEXT    NOT NULL PRIMARY KEY,
    holder      TEXT    NOT NULL,
    acquired_at TEXT    NOT NULL
);
"""


def init_database():
    """
    Create tables if they don't exist yet.

    Call this once at startup. It's safe to call repeatedly — the
    IF NOT EXISTS clause means it won't destroy existing data.
    """
    with get_connection() as conn:
        for ddl in (
            _CREATE_MARKET_DATA, _CREATE_DISCOUNT_SETTINGS, _CREATE_DISCOUNT_VALUES,
            _CREATE_FARMERS, _CREATE_SHELTERS, _CREATE_WAREHOUSES,
            _CREATE_INVENTORY, _CREATE_INVENTORY_FUNDING,
            _CREATE_CCR_HISTORY, _CREATE_CCR_HISTORY_GRADES, _CREATE_RUN_STATE,
        ):
            conn.execute(ddl)
    logger.info("Database initialised (tables verified)")


def save_discount_setting(commodity: str, grade: str, discount: float) -> int:
    """Register a discount tier for a commodity and return its id."""
    with get_connection() as conn:
        cursor = conn.execute(
            "INSERT INTO ma_discount_settings (commodity, grade, discount) VALUES (?, ?, ?)",
            (commodity, grade, float(discount)),
        )
        conn.commit()
        return cursor.lastrowid


def read_discount_settings(commodity: str, conn=None) -> list[dict]:
    """All discount tiers configured for one commodity, oldest first."""
    sql = "SELECT * FROM ma_discount_settings WHERE commodity = ? ORDER BY id"
    if conn is not None:
        return fetch_all(conn, sql, (commodity,))
    with get_connection() as conn:
        return fetch_all(conn, sql, (commodity,))


# ---------------------------------------------------------------------------
# Read functions — used by the health check, CLI and tests
# ---------------------------------------------------------------------------

def read_market_data(commodity: str | None = None) -> pd.DataFrame:
    """
    Read the market series back from the database, oldest trade date first.

    Parameters
    ----------
    commodity : str or None
        If given, filter to just that commodity.  Otherwise return all.
    """
    with get_connection() as conn:
        if commodity:
            df = pd.read_sql(
                "SELECT * FROM market_data WHERE commodity = ? ORDER BY trade_date",
                conn,
                params=(commodity,),
            )
        else:
            df = pd.read_sql(
                "SELECT * FROM market_data ORDER BY commodity, trade_date", conn,
            )

    if "trade_date" in df.columns:
        df["trade_date"] = pd.to_datetime(df["trade_date"])

    return df


def read_discount_values(commodity: str | None = None) -> pd.DataFrame:
    """Read discount tier values joined with their record's commodity and date."""
    sql = """SELECT v.*, m.commodity, m.trade_date
             FROM ma_discount_values v
             JOIN market_data m ON m.id = v.market_data_id"""
    with get_connection() as conn:
        if commodity:
            df = pd.read_sql(
                sql + " WHERE m.commodity = ? ORDER BY m.trade_date, v.setting_id",
                conn,
                params=(commodity,),
            )
        else:
            df = pd.read_sql(sql + " ORDER BY m.commodity, m.trade_date, v.setting_id", conn)

    if "trade_date" in df.columns:
        df["trade_date"] = pd.to_datetime(df["trade_date"])

    return df


def read_ccr_history(scope: str, scope_id: str | None = None) -> pd.DataFrame:
    """Read CCR history snapshots for a scope, newest first."""
    with get_connection() as conn:
        if scope_id is None:
            df = pd.read_sql(
                "SELECT * FROM ccr_history WHERE scope = ? ORDER BY id DESC",
                conn,
                params=(scope,),
            )
        else:
            df = pd.read_sql(
                "SELECT * FROM ccr_history WHERE scope = ? AND scope_id = ? ORDER BY id DESC",
                conn,
                params=(scope, scope_id),
            )
    return df


def read_ccr_history_grades(history_id: int) -> pd.DataFrame:
    """Read the per-grade breakdown stored with one CCR history snapshot."""
    with get_connection() as conn:
        return pd.read_sql(
            "SELECT * FROM ccr_history_grades WHERE history_id = ? ORDER BY id",
            conn,
            params=(history_id,),
        )
