"""
Coffee price index — command-line entry point.

Commands:
    run       Full scheduled task: Robusta then Arabica, with retries,
              followed by a CCR recalculation when anything new was stored
    kc        Scrape Arabica (ICE KC) once
    rm        Scrape Robusta (ICE RM) once
    ccr       Recalculate CCR for one scope (farmer/shelter/warehouse/platform)
              (--show prints the latest stored snapshot instead)
    health    Print the data health report

Usage:
    python main.py run
    python main.py kc
    python main.py ccr farmer F-001 --reason "manual check"
    python main.py ccr warehouse --all
    python main.py ccr platform --show

Key concepts for learning:
    - Graceful degradation: one commodity failing doesn't stop the other.
    - Single-commodity commands make one attempt and exit non-zero on
      failure, so a caller (cron, CI, a webhook) sees the error.
    - logging replaces print() for professional, filterable output.
"""

import argparse
import logging
import sys

from config import setup_logging, CCR_AFTER_SCRAPE, CCR_AUTO_REASON

from analysis.ccr import SCOPES, latest_ccr, update_ccr, update_all_ccr
from analysis.health import run_health_check
from processing.combiner import init_database, read_market_data
from processing.market_series import DuplicateDateError
from processing.pipeline import run_all, scrape_commodity, recalculate_ccr

logger = logging.getLogger(__name__)


def cmd_run(args) -> int:
    logger.info("=" * 60)
    logger.info("  Coffee Price Index — Scheduled Run")
    logger.info("=" * 60)

    outcome = run_all(scheduled=True)
    if outcome["status"] == "skipped":
        return 0

    _print_latest()
    failed = [r["commodity"] for r in outcome["results"] if r["status"] == "failed"]
    if failed:
        logger.warning("Failed:    %s", ", ".join(failed))
        return 1
    return 0


def cmd_scrape(commodity: str) -> int:
    try:
        record = scrape_commodity(commodity)
    except DuplicateDateError as exc:
        logger.warning("%s — nothing new to store", exc)
        return 1
    except Exception:
        logger.error("Error executing %s scrape", commodity, exc_info=True)
        return 1

    logger.info("%s %s stored (id %s)", commodity, record["trade_date"], record["id"])
    if CCR_AFTER_SCRAPE:
        recalculate_ccr()
    return 0


def _show_ccr(scope: str, scope_id) -> int:
    snapshot = latest_ccr(scope, scope_id)
    if snapshot is None:
        logger.warning("No CCR history for %s %s", scope, scope_id or "")
        return 1
    logger.info("%s %s: CCR %.4f at %s — stock value %.2f IDR, loans %.2f IDR (%s)",
                scope, scope_id or "", snapshot["ccr"], snapshot["created_at"],
                snapshot["total_stock_value"], snapshot["loan_total"], snapshot["reason"])
    return 0


def cmd_ccr(args) -> int:
    if args.all:
        result = update_all_ccr(args.scope, reason=args.reason)
        for item in result["updated"]:
            logger.info("  %-12s CCR %.4f", item["id"] or "platform", item["ccr"])
        return 1 if result["failed"] else 0

    if args.scope_id is None and args.scope != "platform":
        logger.error("A %s id is required (or pass --all)", args.scope)
        return 2

    if args.show:
        return _show_ccr(args.scope, args.scope_id)

    result = update_ccr(args.scope, args.scope_id, reason=args.reason)
    logger.info("%s %s: CCR %.4f — stock value %.2f IDR, loans %.2f IDR",
                args.scope, args.scope_id, result["ccr"],
                result["total_stock_value"], result["total_loan"])
    return 0


def cmd_health(args) -> int:
    health = run_health_check()
    logger.info("\n%s", health["summary"])
    for s in health["commodity_status"]:
        logger.info("  %-8s latest %s | rows %4d | tiers %d/%d",
                    s["commodity"], s["latest_date"], s["rows"],
                    s["tiers_present"], s["tiers_expected"])
    critical = [i for i in health["issues"] if i["severity"] == "critical"]
    return 1 if critical else 0


def _print_latest():
    """Log the latest stored record per commodity."""
    data = read_market_data()
    if data.empty:
        logger.warning("  No market data in database!")
        return
    for commodity in data["commodity"].unique():
        subset = data[data["commodity"] == commodity]
        latest = subset.sort_values("trade_date").iloc[-1]
        logger.info(
            "  %8s  |  rows: %4d  |  close: %10.2f %-9s |  IDR/kg: %12.2f  |  date: %s",
            commodity, len(subset), latest["close_price"], latest["unit_label"],
            latest["idr_price"], latest["trade_date"].date(),
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Coffee futures price index (MA30, IDR) and collateral coverage ratios",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.required = True

    subparsers.add_parser("run", help="Scrape both commodities with retries")
    subparsers.add_parser("kc", help="Scrape Arabica once")
    subparsers.add_parser("rm", help="Scrape Robusta once")

    ccr_parser = subparsers.add_parser("ccr", help="Recalculate CCR")
    ccr_parser.add_argument("scope", choices=list(SCOPES))
    ccr_parser.add_argument("scope_id", nargs="?", help="Farmer/shelter/warehouse id")
    ccr_parser.add_argument("--all", action="store_true", help="Every owner in the scope")
    ccr_parser.add_argument("--reason", default=CCR_AUTO_REASON, help="Stored with the history")
    ccr_parser.add_argument("--show", action="store_true",
                            help="Print the latest stored CCR instead of recalculating")

    subparsers.add_parser("health", help="Print the data health report")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    init_database()

    if args.command == "run":
        return cmd_run(args)
    elif args.command == "kc":
        return cmd_scrape("ARABICA")
    elif args.command == "rm":
        return cmd_scrape("ROBUSTA")
    elif args.command == "ccr":
        return cmd_ccr(args)
    elif args.command == "health":
        return cmd_health(args)
    return 2


if __name__ == "__main__":
    sys.exit(main())
