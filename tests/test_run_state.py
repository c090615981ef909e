"""
Tests for the scheduled-run lock kept in the database

Run with:
    pytest tests/test_run_state.py -v
"""

from processing import run_state
from processing.database import get_connection


def _plant_lock(holder, acquired_at, name=run_state.SCHEDULED_RUN):
    with get_connection() as conn:
        conn.execute(
            "INSERT INTO run_state (name, holder, acquired_at) VALUES (?, ?, ?)",
            (name, holder, acquired_at),
        )


class TestRunState:

    def test_acquire_then_release(self, db):
        assert not run_state.is_running()

        assert run_state.acquire()
        assert run_state.is_running()
        assert run_state.holder()["holder"] == run_state._holder()

        run_state.release()
        assert not run_state.is_running()

    def test_second_acquire_fails(self, db):
        assert run_state.acquire()
        assert not run_state.acquire()

    def test_lock_of_other_holder_is_kept(self, db):
        _plant_lock("worker-2:4242", "2999-01-01 00:00:00")

        assert not run_state.acquire()
        run_state.release()

        assert run_state.holder()["holder"] == "worker-2:4242"

    def test_abandoned_lock_is_taken_over(self, db):
        _plant_lock("worker-2:4242", "2000-01-01 00:00:00")

        assert not run_state.is_running()
        assert run_state.acquire()
        assert run_state.holder()["holder"] == run_state._holder()

    def test_names_are_independent(self, db):
        assert run_state.acquire("backfill")

        assert not run_state.is_running()
        assert run_state.acquire()
