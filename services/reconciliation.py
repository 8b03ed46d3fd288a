"""
Reconciliation service: keeps persisted stock holdings fresh.

Two independent policies:
- metrics staleness sweep: holdings whose fundamentals are older than the
  threshold are refreshed one at a time with a fixed pause between oracle calls;
- price sync: every stock's price is refreshed in one batched oracle call.

Merges are field-by-field. A value the oracle could not provide never
overwrites a previously known one.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from config import get_settings
from models import AssetKind, Holding
from prompts import BatchFormat
from repositories import HoldingRepository
from services.market_data import MarketDataService
from services.records import QuoteUpdate, TickerMetrics
from services.subscriptions import HoldingFeed

logger = logging.getLogger(__name__)

DEFAULT_STALENESS = timedelta(hours=24)
DEFAULT_REFRESH_DELAY_SECONDS = 1.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are UTC; some drivers hand them back without tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def is_metrics_stale(holding: Holding, now: datetime, threshold: timedelta = DEFAULT_STALENESS) -> bool:
    """A stock's metrics are stale when never fetched or older than the threshold."""
    if holding.kind != AssetKind.STOCK:
        return False
    if holding.last_metrics_update is None:
        return True
    return as_utc(now) - as_utc(holding.last_metrics_update) > threshold


def find_stale_holdings(
    holdings: Iterable[Holding],
    now: datetime,
    threshold: timedelta = DEFAULT_STALENESS
) -> List[Holding]:
    """Stock holdings due for a metrics refresh, in their original order."""
    return [h for h in holdings if is_metrics_stale(h, now, threshold)]


def metrics_update_fields(metrics: Optional[TickerMetrics], now: datetime) -> dict:
    """Columns to write for a metrics refresh; empty when nothing is known."""
    if metrics is None:
        return {}
    fields = metrics.known_fields()
    if fields:
        fields["last_metrics_update"] = now
    return fields


def quote_update_fields(update: QuoteUpdate, now: datetime) -> dict:
    """Columns to write for a full refresh of an existing holding."""
    fields = metrics_update_fields(update.metrics, now)
    if update.price is not None:
        fields["current_price"] = update.price
        fields["last_price_update"] = now
    if update.price_history:
        fields["price_history"] = [point.to_dict() for point in update.price_history]
    return fields


@dataclass
class SweepReport:
    """Outcome of one staleness sweep, by holding id."""
    refreshed: List[int] = field(default_factory=list)
    unchanged: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.refreshed) + len(self.unchanged) + len(self.failed)


class ReconciliationService:
    """
    Applies oracle results to persisted holdings.
    Always writes through HoldingRepository.update_fields, which re-reads the row,
    so concurrent price and metrics writes never clobber each other.
    """

    def __init__(
        self,
        market_data: MarketDataService,
        feed: Optional[HoldingFeed] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        staleness: Optional[timedelta] = None,
        refresh_delay: Optional[float] = None
    ):
        settings = get_settings()
        self.market_data = market_data
        self.feed = feed
        self.sleep = sleep
        self.clock = clock
        self.staleness = staleness if staleness is not None else settings.metrics_staleness
        self.refresh_delay = refresh_delay if refresh_delay is not None else settings.refresh_delay_seconds

    def _publish(self, user_id: str):
        if self.feed is not None:
            self.feed.publish(user_id)

    def merge_metrics(self, holding_id: int, metrics: Optional[TickerMetrics]) -> Optional[Holding]:
        """
        Merge refreshed metrics into a holding, keeping old values where the
        oracle returned nothing.

        Returns:
            The updated holding, or None when there was nothing to merge
            or the holding no longer exists
        """
        fields = metrics_update_fields(metrics, self.clock())
        if not fields:
            return None
        return HoldingRepository.update_fields(holding_id, fields)

    def refresh_stale_metrics(self, user_id: str) -> SweepReport:
        """
        Refresh every stale stock holding of a user, strictly one at a time.

        The stale set is computed once up front. Consecutive oracle calls are
        separated by refresh_delay seconds. A failure on one holding is logged
        and the sweep moves on.
        """
        report = SweepReport()
        stale = find_stale_holdings(HoldingRepository.get_stocks(user_id), self.clock(), self.staleness)
        if not stale:
            logger.info(f"No stale holdings for user {user_id}")
            return report

        logger.info(f"Refreshing metrics for {len(stale)} stale holdings...")

        for index, holding in enumerate(stale):
            if index > 0:
                self.sleep(self.refresh_delay)
            try:
                metrics = self.market_data.fetch_ticker_metrics(holding.ticker, holding.exchange)
                updated = self.merge_metrics(holding.id, metrics)
            except Exception as e:
                logger.error(f"Error refreshing metrics for {holding.ticker}: {e}")
                report.failed.append(holding.id)
                continue

            if updated is None:
                logger.info(f"No new metrics for {holding.ticker}, keeping cached values")
                report.unchanged.append(holding.id)
            else:
                report.refreshed.append(holding.id)

        logger.info(
            f"Metrics sweep complete: {len(report.refreshed)} refreshed, "
            f"{len(report.unchanged)} unchanged, {len(report.failed)} failed"
        )
        if report.refreshed:
            self._publish(user_id)
        return report

    def sync_prices(self, user_id: str, response_format: Optional[BatchFormat] = None) -> int:
        """
        Refresh the price of every stock holding in one batched oracle call.

        Results are matched back on the exact (ticker, exchange) pair. Results
        that match nothing are discarded; holdings missing from the answer are
        left as they are.

        Returns:
            Number of holdings whose price was updated
        """
        if response_format is None:
            response_format = BatchFormat(get_settings().batch_price_format)

        stocks = HoldingRepository.get_stocks(user_id)
        if not stocks:
            return 0

        pairs = list(dict.fromkeys((h.ticker, h.exchange) for h in stocks))
        prices = self.market_data.fetch_batch_prices(pairs, response_format)
        by_pair = {(p.ticker, p.exchange): p.price for p in prices}

        now = self.clock()
        updated = 0
        for holding in stocks:
            price = by_pair.get((holding.ticker, holding.exchange))
            if price is None:
                continue
            HoldingRepository.update_fields(holding.id, {
                "current_price": price,
                "last_price_update": now,
            })
            updated += 1

        unmatched = set(by_pair) - set(pairs)
        if unmatched:
            logger.debug(f"Discarded {len(unmatched)} unmatched price entries")
        logger.info(f"Price sync updated {updated} of {len(stocks)} holdings")

        if updated:
            self._publish(user_id)
        return updated
