"""
Tests for the CCR calculator

The seeded book:

    owner      lot   commodity grade     net stock  campaign
    farmer F1  inv1  Robusta   Grade 1   800        1 (10M)
    farmer F1  inv2  Arabica   Grade 1   100        2 (5M)
    farmer F1  inv3  Robusta   Grade 2   500        no document → excluded
    farmer F1  inv4  Robusta   Cherry    300        not a grade → excluded
    farmer F1  inv5  Robusta   Grade 1   900        deleted → excluded
    farmer F2  inv6  Robusta   Grade 2   1000       3 (20M)
    shelter S1 inv7  Robusta   Grade 1   400        4 (ledger fails)
    whs W1     inv8  Arabica   Grade 1   50         none (bought out)

Prices (IDR/kg): Robusta G1 30000, Robusta G2 27000, Arabica G1 80000.

Run with:
    pytest tests/test_ccr.py -v
"""

import pandas as pd
import pytest

import analysis.ccr as ccr
from analysis.ccr import (
    compute_ccr,
    coverage_ratio,
    get_stock_prices,
    get_stocks,
    latest_ccr,
    list_scope_ids,
    update_all_ccr,
    update_ccr,
)
from processing.combiner import read_ccr_history, read_ccr_history_grades
from processing.database import get_connection, fetch_one

LOANS = {1: 10_000_000.0, 2: 5_000_000.0, 3: 20_000_000.0}


def ledger(campaign_id):
    if campaign_id not in LOANS:
        raise RuntimeError(f"execution reverted: campaign {campaign_id}")
    return LOANS[campaign_id]


def _insert(conn, table, **cols):
    conn.execute(
        f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
        tuple(cols.values()),
    )


def _price(conn, commodity, grade, price, trade_date, created_at):
    cursor = conn.execute(
        "INSERT INTO market_data (commodity, trade_date, close_price, created_at) "
        "VALUES (?, ?, 0, ?)",
        (commodity, trade_date, created_at),
    )
    market_id = cursor.lastrowid
    cursor = conn.execute(
        "INSERT INTO ma_discount_settings (commodity, grade, discount) VALUES (?, ?, 0)",
        (commodity, grade),
    )
    _insert(conn, "ma_discount_values", market_data_id=market_id,
            setting_id=cursor.lastrowid, grade=grade, discount_percentage=0,
            discounted_idr_ma30=price, created_at=created_at)


def _lot(conn, lot_id, commodity, grade, inbound, outbound=0, farmer=None, shelter=None,
         warehouse=None, bought_out=0, document="DOC", deleted=None):
    _insert(conn, "inventory", id=lot_id, farmer_id=farmer, shelter_id=shelter,
            warehouse_id=warehouse, bought_out=bought_out, commodity_type=commodity,
            grade=grade, inbound=inbound, outbound=outbound, document_id=document,
            deleted_at=deleted)


@pytest.fixture
def book(db):
    with get_connection() as conn:
        for table, entity in [("farmers", "F1"), ("farmers", "F2"),
                              ("shelters", "S1"), ("warehouses", "W1")]:
            _insert(conn, table, id=entity, name=entity)

        _price(conn, "ROBUSTA", "GRADE_1", 25000.0, "2024-04-30", "2024-04-30 08:00:00")
        _price(conn, "ROBUSTA", "GRADE_1", 30000.0, "2024-05-01", "2024-05-01 08:00:00")
        _price(conn, "ROBUSTA", "GRADE_2", 27000.0, "2024-05-02", "2024-05-01 08:00:00")
        _price(conn, "ARABICA", "GRADE_1", 80000.0, "2024-05-01", "2024-05-01 08:00:00")

        _lot(conn, "inv1", "Robusta", "Grade 1", 1000, 200, farmer="F1")
        _lot(conn, "inv2", "Arabica", "Grade 1", 100, farmer="F1")
        _lot(conn, "inv3", "Robusta", "Grade 2", 500, farmer="F1", document=None)
        _lot(conn, "inv4", "Robusta", "Cherry", 300, farmer="F1")
        _lot(conn, "inv5", "Robusta", "Grade 1", 900, farmer="F1", deleted="2024-04-01")
        _lot(conn, "inv6", "Robusta", "Grade 2", 1000, farmer="F2")
        _lot(conn, "inv7", "Robusta", "Grade 1", 400, farmer="F3", shelter="S1")
        _lot(conn, "inv8", "Arabica", "Grade 1", 50, warehouse="W1", bought_out=1)

        _insert(conn, "inventory_funding", id="f1", inventory_id="inv1", campaign_id=1)
        _insert(conn, "inventory_funding", id="f2", inventory_id="inv2", campaign_id=2)
        _insert(conn, "inventory_funding", id="f3", inventory_id="inv6", campaign_id=3)
        _insert(conn, "inventory_funding", id="f4", inventory_id="inv7", campaign_id=4)
        _insert(conn, "inventory_funding", id="f5", inventory_id="inv3", campaign_id=5,
                deleted_at="2024-04-02")
        _insert(conn, "inventory_funding", id="f6", inventory_id="inv8", campaign_id=None)
    return db


def _entity_ccr(table, entity_id):
    with get_connection() as conn:
        return fetch_one(conn, f"SELECT ccr FROM {table} WHERE id = ?", (entity_id,))["ccr"]


class TestStocksAndPrices:

    def test_farmer_buckets(self, book):
        with get_connection() as conn:
            stocks = get_stocks(conn, "farmer", "F1")

        assert len(stocks) == 10
        by_key = {(r.commodity, r.grade): r.stock for r in stocks.itertuples()}
        assert by_key[("ROBUSTA", "GRADE_1")] == 800.0
        assert by_key[("ARABICA", "GRADE_1")] == 100.0
        assert by_key[("ROBUSTA", "GRADE_2")] == 0.0

    def test_no_inventory_is_all_zero(self, book):
        with get_connection() as conn:
            stocks = get_stocks(conn, "farmer", "nobody")

        assert len(stocks) == 10
        assert stocks["stock"].sum() == 0.0

    def test_latest_price_per_bucket(self, book):
        with get_connection() as conn:
            prices = get_stock_prices(conn)

        assert prices[("ROBUSTA", "GRADE_1")] == 30000.0
        assert prices[("ROBUSTA", "GRADE_2")] == 27000.0
        assert prices[("ARABICA", "GRADE_1")] == 80000.0
        assert prices[("ARABICA", "GRADE_4B")] == 0.0


class TestComputeCcr:

    def test_farmer(self, book):
        result = compute_ccr("farmer", "F1", ledger=ledger)

        assert result["total_stock_value"] == 32_000_000.0
        assert result["total_loan"] == 15_000_000.0
        assert result["ccr"] == pytest.approx(32 / 15)
        assert result["stock_robusta"] == 800.0
        assert result["stock_arabica"] == 100.0
        assert result["idr_ma30_robusta"] == 30000.0
        assert result["idr_ma30_arabica"] == 80000.0
        assert len(result["breakdown"]) == 10

    def test_zero_loan_gives_zero_ccr(self, book):
        result = compute_ccr("warehouse", "W1", ledger=ledger)

        assert result["total_stock_value"] > 0
        assert result["total_loan"] == 0.0
        assert result["ccr"] == 0.0

    def test_failed_campaign_left_out(self, book):
        result = compute_ccr("shelter", "S1", ledger=ledger)

        assert result["total_stock_value"] == 12_000_000.0
        assert result["total_loan"] == 0.0
        assert result["ccr"] == 0.0

    def test_platform(self, book):
        result = compute_ccr("platform", ledger=ledger)

        assert result["total_stock"] == 2350.0
        assert result["total_stock_value"] == 75_000_000.0
        assert result["total_loan"] == 35_000_000.0
        assert result["ccr"] == pytest.approx(75 / 35)

    def test_coverage_ratio(self):
        assert coverage_ratio(0.0, 0.0) == 0.0
        assert coverage_ratio(1_000.0, 0.0) == 0.0
        assert coverage_ratio(1_500.0, 1_000.0) == 1.5

    def test_unknown_scope(self, book):
        with pytest.raises(ValueError):
            compute_ccr("cooperative", "C1", ledger=ledger)

    def test_owner_id_required(self, book):
        with pytest.raises(ValueError):
            compute_ccr("farmer", ledger=ledger)


class TestUpdateCcr:

    def test_updates_entity_and_history(self, book):
        result = update_ccr("farmer", "F1", reason="manual check", ledger=ledger)

        assert _entity_ccr("farmers", "F1") == pytest.approx(32 / 15)
        history = read_ccr_history("farmer", "F1")
        assert len(history) == 1
        row = history.iloc[0]
        assert row["reason"] == "manual check"
        assert row["loan_total"] == 15_000_000.0
        assert row["stock_robusta"] == 800.0
        assert row["idr_ma30_arabica"] == 80000.0

        grades = read_ccr_history_grades(result["history_id"])
        assert len(grades) == 10
        assert set(grades["commodity"]) == {"ARABICA", "ROBUSTA"}

    def test_entity_and_history_roll_back_together(self, book, monkeypatch):
        def broken(*args):
            raise RuntimeError("disk full")
        monkeypatch.setattr(ccr, "_insert_grades", broken)

        with pytest.raises(RuntimeError):
            update_ccr("farmer", "F1", reason="manual check", ledger=ledger)

        assert _entity_ccr("farmers", "F1") == 0.0
        assert read_ccr_history("farmer", "F1").empty

    def test_platform_snapshot(self, book):
        update_ccr("platform", reason="month end", ledger=ledger)

        history = read_ccr_history("platform")
        assert len(history) == 1
        assert pd.isna(history.iloc[0]["scope_id"])
        assert history.iloc[0]["ccr"] == pytest.approx(75 / 35)

    def test_latest_snapshot(self, book):
        assert latest_ccr("farmer", "F1") is None

        update_ccr("farmer", "F1", reason="first", ledger=ledger)
        update_ccr("farmer", "F1", reason="second", ledger=ledger)
        update_ccr("platform", reason="month end", ledger=ledger)

        assert latest_ccr("farmer", "F1")["reason"] == "second"
        assert latest_ccr("platform")["ccr"] == pytest.approx(75 / 35)
        assert latest_ccr("farmer", "F2") is None


class TestUpdateAllCcr:

    def test_scope_enumeration(self, book):
        with get_connection() as conn:
            assert list_scope_ids(conn, "farmer") == ["F1", "F2"]
            assert list_scope_ids(conn, "shelter") == ["S1"]
            assert list_scope_ids(conn, "warehouse") == ["W1"]
            assert list_scope_ids(conn, "platform") == [None]

    def test_every_farmer_processed(self, book):
        result = update_all_ccr("farmer", ledger=ledger)

        assert result["status"] == "success"
        assert [u["id"] for u in result["updated"]] == ["F1", "F2"]
        assert _entity_ccr("farmers", "F1") == pytest.approx(32 / 15)
        assert _entity_ccr("farmers", "F2") == pytest.approx(1.35)
        assert len(read_ccr_history("farmer")) == 2

    def test_failing_owner_skipped(self, book):
        with get_connection() as conn:
            conn.execute("DELETE FROM farmers WHERE id = 'F1'")

        result = update_all_ccr("farmer", ledger=ledger)

        assert result["failed"] == ["F1"]
        assert [u["id"] for u in result["updated"]] == ["F2"]
        assert read_ccr_history("farmer", "F1").empty
        assert len(read_ccr_history("farmer", "F2")) == 1
        with get_connection() as conn:
            grade_rows = conn.execute("SELECT COUNT(*) FROM ccr_history_grades").fetchone()[0]
        assert grade_rows == 10

    def test_default_reason(self, book):
        update_all_ccr("warehouse", ledger=ledger)

        reason = read_ccr_history("warehouse", "W1").iloc[0]["reason"]
        assert reason == "MA30 price update - Automatic CCR recalculation after price scrape"
