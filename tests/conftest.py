"""
Shared fixtures: a throwaway SQLite database per test and quote factories.
"""

import pytest

import processing.database as database
from processing.combiner import init_database


@pytest.fixture
def db(tmp_path, monkeypatch):
    """Point every connection at a fresh SQLite file with the schema created."""
    path = str(tmp_path / "price_index.db")
    monkeypatch.setattr(database, "DB_PATH", path)
    monkeypatch.setattr(database, "TURSO_DATABASE_URL", "")
    monkeypatch.setattr(database, "TURSO_AUTH_TOKEN", "")
    init_database()
    return path


def make_raw_row(symbol="RMH26", last=2000, change=50, previous=1950,
                 date="2024-05-01", **extra):
    """A quote row shaped like the Barchart quotes API returns it."""
    raw = {
        "dailyOpenPrice": last - 10,
        "dailyHighPrice": last + 20,
        "dailyLowPrice": last - 30,
        "dailyLastPrice": last,
        "dailyPriceChange": change,
        "dailyPreviousPrice": previous,
        "dailyVolume": 12000,
        "dailyOpenInterest": 45000,
        "dailyDate1dAgo": date,
    }
    raw.update(extra)
    return {"symbol": symbol, "raw": raw}


def make_quote(trade_date, close, previous_close=None, price_change=0.0):
    """A cleaned quote, as processing.cleaner.clean_quote() returns it."""
    return {
        "symbol": "RMH26",
        "trade_date": trade_date,
        "open": close,
        "high": close,
        "low": close,
        "close": close,
        "previous_close": close if previous_close is None else previous_close,
        "price_change": price_change,
        "volume": 1000,
        "open_interest": 5000,
    }


@pytest.fixture
def raw_row():
    return make_raw_row


@pytest.fixture
def quote():
    return make_quote
