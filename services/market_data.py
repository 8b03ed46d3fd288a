"""
Market data service.
Every piece of market data comes from the oracle: this service pairs each
prompt builder with its parser and returns typed records.
Oracle failures (unavailable, blocked, empty, malformed) propagate to the caller.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from llm_engine import Oracle
from models.enums import Exchange, HistoryRange
from prompts import (
    BATCH_PRICE_SCHEMA,
    DETAILS_SCHEMA,
    NEWS_SCHEMA,
    BatchFormat,
    build_batch_price_prompt,
    build_chart_prompt,
    build_details_prompt,
    build_exchange_rate_prompt,
    build_history_prompt,
    build_lookup_prompt,
    build_metrics_prompt,
    build_news_prompt,
)
from services import parser
from services.records import (
    BatchPrice,
    NewsItem,
    PriceHistoryPoint,
    QuoteUpdate,
    StockSnapshot,
    TickerDetails,
    TickerMetrics,
)

logger = logging.getLogger(__name__)

MIN_CHART_POINTS = 2


class MarketDataService:
    """
    Service for fetching quotes, fundamentals, history and news from the oracle.
    """

    def __init__(self, oracle: Oracle):
        self.oracle = oracle

    def fetch_asset_data(
        self,
        query: str,
        exchange: Exchange,
        include_history: bool = False
    ) -> Optional[StockSnapshot]:
        """
        Full lookup for a ticker or company name.

        Returns:
            StockSnapshot, or None when ticker, name or price could not be parsed
        """
        text = self.oracle.generate(build_lookup_prompt(query, exchange, include_history), use_search=True)
        snapshot = parser.parse_stock_snapshot(text)
        if snapshot is None:
            logger.warning(f"No usable data for {query!r} on {exchange.value}")
        return snapshot

    def fetch_quote_update(self, ticker: str, exchange: Exchange, include_history: bool = True) -> QuoteUpdate:
        """Full lookup for an existing holding; partial answers are kept."""
        text = self.oracle.generate(build_lookup_prompt(ticker, exchange, include_history), use_search=True)
        return parser.parse_quote_update(text)

    def fetch_ticker_metrics(self, ticker: str, exchange: Exchange) -> Optional[TickerMetrics]:
        """Metrics-only refresh. None means the oracle returned nothing usable."""
        text = self.oracle.generate(build_metrics_prompt(ticker, exchange), use_search=True)
        return parser.parse_ticker_metrics(text)

    def fetch_batch_prices(
        self,
        pairs: Sequence[Tuple[str, Exchange]],
        response_format: BatchFormat = BatchFormat.TEXT
    ) -> List[BatchPrice]:
        """Latest prices for many tickers in one oracle call."""
        if not pairs:
            return []

        prompt = build_batch_price_prompt(pairs, response_format)
        if response_format == BatchFormat.JSON:
            text = self.oracle.generate(prompt, use_search=True, schema=BATCH_PRICE_SCHEMA)
            return parser.parse_batch_prices_json(text)

        text = self.oracle.generate(prompt, use_search=True)
        return parser.parse_batch_prices_text(text)

    def fetch_price_history(
        self,
        ticker: str,
        exchange: Exchange,
        history_range: HistoryRange
    ) -> List[PriceHistoryPoint]:
        """OHLCV series for a range; 15-minute bars for 1D, daily bars otherwise."""
        text = self.oracle.generate(build_history_prompt(ticker, exchange, history_range), use_search=True)
        points = parser.parse_ohlcv_series(text)
        logger.info(f"Parsed {len(points)} {history_range.value} points for {ticker}")
        return points

    def fetch_news(self, ticker: str, exchange: Exchange) -> List[NewsItem]:
        text = self.oracle.generate(build_news_prompt(ticker, exchange), use_search=True, schema=NEWS_SCHEMA)
        return parser.parse_news_json(text)

    def fetch_ticker_details(self, ticker: str, exchange: Exchange) -> Optional[TickerDetails]:
        text = self.oracle.generate(build_details_prompt(ticker, exchange), use_search=True, schema=DETAILS_SCHEMA)
        return parser.parse_ticker_details_json(text)

    def fetch_exchange_rate(self) -> Optional[float]:
        """CAD to USD conversion rate, or None if the answer was not a positive number."""
        text = self.oracle.generate(build_exchange_rate_prompt(), use_search=True, temperature=0.0)
        return parser.parse_exchange_rate(text)

    def generate_chart_svg(self, ticker: str, history: Sequence[PriceHistoryPoint]) -> Optional[str]:
        """Ask the oracle to draw the series; needs at least two points."""
        if len(history) < MIN_CHART_POINTS:
            return None
        text = self.oracle.generate(build_chart_prompt(ticker, [point.close for point in history]))
        svg = parser.extract_svg(text)
        if svg is None:
            logger.warning(f"Chart response for {ticker} contained no <svg> element")
        return svg
