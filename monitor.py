"""
Background price synchronisation using APScheduler.
Refreshes every stock price of a user in one batched oracle call at a fixed
interval, and sweeps stale fundamentals once on start.
"""

import argparse
import logging
import math
import time
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv

from config import get_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
PRICE_SYNC_JOB_ID = 'price_sync'
NEVER_SYNCED = -math.inf


def configure_logging(level: Optional[str] = None):
    """Configure root logging once for the app or the monitor CLI."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format=LOG_FORMAT
    )


def is_sync_due(last_sync: float, interval_seconds: float, now: float) -> bool:
    """True once interval_seconds have passed since last_sync (monotonic seconds)."""
    return now - last_sync >= interval_seconds


class PriceSyncMonitor:
    """
    Keeps one user's holdings fresh while a portfolio view is open.
    Failures inside a job are logged; the schedule keeps running.
    """

    def __init__(
        self,
        reconciliation,
        user_id: str,
        interval_seconds: Optional[int] = None,
        scheduler: Optional[BackgroundScheduler] = None
    ):
        self.reconciliation = reconciliation
        self.user_id = user_id
        self.interval_seconds = interval_seconds or get_settings().price_sync_interval_seconds
        self.scheduler = scheduler or BackgroundScheduler()

    def sync_prices(self) -> int:
        """Job body: one batched price refresh. Returns the number of updated holdings."""
        logger.info(f"Starting price sync for user {self.user_id}...")
        try:
            return self.reconciliation.sync_prices(self.user_id)
        except Exception as e:
            logger.error(f"Price sync failed: {e}")
            return 0

    def sweep_stale_metrics(self):
        """Refresh fundamentals older than the staleness threshold."""
        try:
            return self.reconciliation.refresh_stale_metrics(self.user_id)
        except Exception as e:
            logger.error(f"Metrics sweep failed: {e}")
            return None

    def run_once(self):
        """Single sweep plus price sync (useful for testing and cron)."""
        report = self.sweep_stale_metrics()
        updated = self.sync_prices()
        return report, updated

    def start(self, run_initial_sweep: bool = True) -> BackgroundScheduler:
        """Schedule the interval price sync and start the scheduler."""
        self.scheduler.add_job(
            self.sync_prices,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=PRICE_SYNC_JOB_ID,
            name='Price Sync',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        if run_initial_sweep:
            logger.info("Running initial metrics sweep on startup...")
            self.sweep_stale_metrics()

        self.scheduler.start()
        logger.info(f"Price sync scheduler started. Running every {self.interval_seconds} seconds.")
        return self.scheduler

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Price sync scheduler stopped.")

    @property
    def is_running(self) -> bool:
        return self.scheduler.running


def build_reconciliation():
    """Wire the oracle, market data and reconciliation services from settings."""
    from db_engine import init_db
    from llm_engine import create_oracle_from_settings
    from services import MarketDataService, ReconciliationService

    init_db()
    return ReconciliationService(MarketDataService(create_oracle_from_settings()))


def run_one_time_sync(user_id: str):
    """Run a single sweep and price sync for a user."""
    logger.info("Running one-time sync...")
    return PriceSyncMonitor(build_reconciliation(), user_id).run_once()


def main(argv=None):
    load_dotenv()
    parser = argparse.ArgumentParser(description="FolioOracle price monitor")
    parser.add_argument("--user", required=True, help="User id whose holdings are synchronised")
    parser.add_argument("--once", action="store_true", help="Run a single sync and exit")
    args = parser.parse_args(argv)

    configure_logging()

    if args.once:
        run_one_time_sync(args.user)
        return

    monitor = PriceSyncMonitor(build_reconciliation(), args.user)
    try:
        monitor.start()
        print("\n" + "=" * 60)
        print("FolioOracle Price Monitor is running...")
        print("Press Ctrl+C to stop.")
        print("=" * 60 + "\n")

        while True:
            time.sleep(1)

    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down price monitor...")
        monitor.stop()


if __name__ == "__main__":
    main()
