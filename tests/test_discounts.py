"""
Tests for the discount tier generator

Run with:
    pytest tests/test_discounts.py -v
"""

import pytest

from processing.combiner import read_discount_values, save_discount_setting
from processing.database import get_connection
from processing.discounts import discounted, generate_tiers


def _store_record(commodity, trade_date, ma30, idr_ma30=None):
    """Insert a bare market record and return it as generate_tiers() expects."""
    with get_connection() as conn:
        cursor = conn.execute(
            "INSERT INTO market_data (commodity, trade_date, close_price, ma30, idr_ma30, "
            "created_at) VALUES (?, ?, ?, ?, ?, '2024-01-01 00:00:00')",
            (commodity, trade_date, ma30 or 0.0, ma30, idr_ma30),
        )
        record_id = cursor.lastrowid
    return {"id": record_id, "commodity": commodity, "trade_date": trade_date,
            "ma30": ma30, "idr_ma30": idr_ma30}


def _count_values():
    with get_connection() as conn:
        return conn.execute("SELECT COUNT(*) FROM ma_discount_values").fetchone()[0]


class TestDiscounted:

    def test_percentage_off(self):
        assert discounted(100.0, 10) == pytest.approx(90.0)

    def test_none(self):
        assert discounted(None, 10) is None


class TestGenerateTiers:

    def test_ten_percent_of_hundred(self, db):
        save_discount_setting("ROBUSTA", "GRADE_2", 10)
        record = _store_record("ROBUSTA", "2024-05-01", 100.0, 1600.0)

        tiers = generate_tiers(record)

        assert len(tiers) == 1
        assert tiers[0]["discounted_ma30"] == 90.0
        assert tiers[0]["discounted_idr_ma30"] == 1440.0
        assert tiers[0]["discounted_ma30_movement"] == 0.0
        assert tiers[0]["grade"] == "GRADE_2"

    def test_movement_against_previous_record(self, db):
        save_discount_setting("ROBUSTA", "GRADE_2", 10)
        generate_tiers(_store_record("ROBUSTA", "2024-05-01", 100.0, 1600.0))

        tiers = generate_tiers(_store_record("ROBUSTA", "2024-05-02", 110.0, 1760.0))

        assert tiers[0]["discounted_ma30"] == 99.0
        assert tiers[0]["discounted_ma30_movement"] == 9.0
        assert tiers[0]["discounted_idr_ma30_movement"] == 144.0

    def test_movement_uses_same_setting_and_commodity(self, db):
        robusta_g2 = save_discount_setting("ROBUSTA", "GRADE_2", 10)
        save_discount_setting("ROBUSTA", "GRADE_3", 20)
        save_discount_setting("ARABICA", "GRADE_2", 10)
        generate_tiers(_store_record("ARABICA", "2024-05-01", 300.0))
        generate_tiers(_store_record("ROBUSTA", "2024-05-01", 100.0))

        tiers = generate_tiers(_store_record("ROBUSTA", "2024-05-02", 110.0))

        by_setting = {t["setting_id"]: t for t in tiers}
        assert by_setting[robusta_g2]["discounted_ma30_movement"] == 9.0
        assert sorted(t["discounted_ma30_movement"] for t in tiers) == [8.0, 9.0]

    def test_null_ma30_writes_nothing(self, db):
        save_discount_setting("ROBUSTA", "GRADE_2", 10)

        assert generate_tiers(_store_record("ROBUSTA", "2024-05-01", None)) == []
        assert _count_values() == 0

    def test_no_settings(self, db):
        assert generate_tiers(_store_record("ROBUSTA", "2024-05-01", 100.0)) == []

    def test_existing_tier_skipped_others_written(self, db):
        save_discount_setting("ROBUSTA", "GRADE_2", 10)
        record = _store_record("ROBUSTA", "2024-05-01", 100.0)
        generate_tiers(record)
        save_discount_setting("ROBUSTA", "GRADE_3", 20)

        tiers = generate_tiers(record)

        assert [t["grade"] for t in tiers] == ["GRADE_3"]
        assert _count_values() == 2
        values = read_discount_values("ROBUSTA")
        assert sorted(values["discounted_ma30"]) == [80.0, 90.0]

    def test_values_rounded_to_cents(self, db):
        save_discount_setting("ROBUSTA", "GRADE_4B", 7.5)

        tiers = generate_tiers(_store_record("ROBUSTA", "2024-05-01", 101.2345, 1619.752))

        assert tiers[0]["discounted_ma30"] == 93.64
        assert tiers[0]["discounted_idr_ma30"] == 1498.27
