"""
Scrape run orchestration: quote → cleaned quote → market record → tiers.

Each commodity is its own failure domain.  A run scrapes Robusta, then
Arabica, with bounded exponential-backoff retries per commodity; one
commodity failing never stops the other.  When at least one new record
landed, collateral coverage ratios are recalculated for every scope.

Key concepts:
    - DuplicateDateError is the normal outcome when the exchange has not
      published a new day yet.  It is never retried.
    - Scheduled runs take a non-blocking lock in the shared database (see
      processing.run_state); an overlapping scheduled run, even one started
      by another process, is skipped instead of queued.
"""

import logging
import time

from config import MAX_RETRIES, RETRY_DELAY, CCR_AFTER_SCRAPE, CCR_AUTO_REASON
from data.fetchers.barchart_fetcher import fetch_active_quote
from data.fetchers.fx_fetcher import fetch_idr_rate
from processing.cleaner import clean_quote
from processing.market_series import ingest, DuplicateDateError
from processing import run_state

logger = logging.getLogger(__name__)

# Robusta first, matching the order the platform has always scraped in
RUN_ORDER = ["ROBUSTA", "ARABICA"]


class ScrapeError(RuntimeError):
    """No usable quote could be captured for a commodity."""


def scrape_commodity(commodity: str, quote_fetcher=fetch_active_quote,
                     rate_fetcher=fetch_idr_rate) -> dict:
    """
    Extract, clean and store today's quote for one commodity.

    Returns
    -------
    dict
        The stored market record.

    Raises
    ------
    ScrapeError
        No quote JSON arrived or no row matched the active contract.
    DuplicateDateError
        The trade date is already stored.
    """
    row = quote_fetcher(commodity)
    if row is None:
        raise ScrapeError(f"No valid {commodity} quote received")

    quote = clean_quote(row)
    logger.info("%s %s: close %.2f (prev %s, change %s)",
                commodity, quote["trade_date"], quote["close"],
                quote["previous_close"], quote["price_change"])
    return ingest(commodity, quote, rate_fetcher=rate_fetcher)


def retry_with_backoff(fn, task_name: str, max_retries: int = MAX_RETRIES,
                       base_delay: float = RETRY_DELAY, sleep=time.sleep):
    """
    Call ``fn()`` until it succeeds, waiting base_delay * 2^(attempt-1)
    seconds between attempts.

    DuplicateDateError is re-raised immediately.  After ``max_retries``
    failed attempts a RuntimeError is raised naming the task and the
    last error.
    """
    last_error = None
    for attempt in range(1, max_retries + 1):
        try:
            return fn()
        except DuplicateDateError:
            raise
        except Exception as exc:
            last_error = exc
            logger.warning("%s failed (attempt %d/%d): %s",
                           task_name, attempt, max_retries, exc)
            if attempt < max_retries:
                delay = base_delay * 2 ** (attempt - 1)
                logger.info("Retrying %s in %.0fs ...", task_name, delay)
                sleep(delay)

    raise RuntimeError(
        f"{task_name} failed after {max_retries} attempts: {last_error}"
    ) from last_error


def is_running() -> bool:
    """True while any process holds the scheduled-run lock."""
    return run_state.is_running(run_state.SCHEDULED_RUN)


def run_commodity(commodity: str, scrape=scrape_commodity, **retry_kwargs) -> dict:
    """
    Scrape one commodity with retries and report the outcome.

    Never raises.  Returns ``{"commodity", "status", "message"}`` where
    status is "ok", "duplicate" or "failed"; "ok" results also carry
    the stored ``record``.
    """
    try:
        record = retry_with_backoff(lambda: scrape(commodity),
                                    f"{commodity} scrape", **retry_kwargs)
    except DuplicateDateError as exc:
        logger.warning("%s: %s — skipping", commodity, exc)
        return {"commodity": commodity, "status": "duplicate", "message": str(exc)}
    except Exception as exc:
        logger.error("%s scrape gave up", commodity, exc_info=True)
        return {"commodity": commodity, "status": "failed", "message": str(exc)}

    return {
        "commodity": commodity,
        "status": "ok",
        "message": f"{commodity} {record['trade_date']} stored",
        "record": record,
    }


def recalculate_ccr():
    """Refresh the CCR of every farmer, shelter, warehouse and the platform."""
    # Imported here: analysis depends on processing, not the other way round
    from analysis.ccr import SCOPES, update_all_ccr

    for scope in SCOPES:
        try:
            result = update_all_ccr(scope, reason=CCR_AUTO_REASON)
            logger.info("CCR %s: %s", scope, result["message"])
        except Exception:
            logger.error("CCR recalculation for %s failed", scope, exc_info=True)


def run_all(scheduled: bool = False, commodities=None, scrape=scrape_commodity,
            with_ccr: bool = CCR_AFTER_SCRAPE, **retry_kwargs) -> dict:
    """
    Scrape every commodity, then refresh CCRs if anything new was stored.

    Parameters
    ----------
    scheduled : bool
        Scheduled runs skip (status "skipped") when another scheduled run,
        in this process or any other, still holds the lock.  On-demand runs
        never wait or skip.
    commodities : list[str] or None
        Defaults to RUN_ORDER.
    with_ccr : bool
        Recalculate every scope's CCR when at least one record was stored.

    Returns
    -------
    dict
        ``{"status": "done"|"skipped", "results": [...]}``
    """
    if scheduled and not run_state.acquire(run_state.SCHEDULED_RUN):
        held = run_state.holder(run_state.SCHEDULED_RUN) or {}
        logger.warning("Previous scheduled run still in progress (%s since %s) — skipping",
                       held.get("holder"), held.get("acquired_at"))
        return {"status": "skipped", "results": []}

    try:
        results = [run_commodity(c, scrape=scrape, **retry_kwargs)
                   for c in (commodities or RUN_ORDER)]

        for r in results:
            logger.info("  %-8s %-9s %s", r["commodity"], r["status"], r["message"])

        if with_ccr and any(r["status"] == "ok" for r in results):
            recalculate_ccr()

        return {"status": "done", "results": results}
    finally:
        if scheduled:
            run_state.release(run_state.SCHEDULED_RUN)
