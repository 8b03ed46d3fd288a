"""
Services package for FolioOracle.
Provides core business logic separated from presentation and data layers.
"""

from services.records import (
    BatchPrice,
    NewsItem,
    PriceHistoryPoint,
    QuoteUpdate,
    StockSnapshot,
    TickerDetails,
    TickerMetrics,
)
from services.market_data import MarketDataService
from services.subscriptions import HoldingFeed
from services.reconciliation import ReconciliationService, SweepReport
from services.session import SessionContext
from services.portfolio import (
    PortfolioService,
    PortfolioSummary,
    calculate_summary,
    calculate_account_summaries,
    holding_rows,
    stored_price_history,
)

__all__ = [
    # Records
    'BatchPrice',
    'NewsItem',
    'PriceHistoryPoint',
    'QuoteUpdate',
    'StockSnapshot',
    'TickerDetails',
    'TickerMetrics',
    # Services
    'MarketDataService',
    'HoldingFeed',
    'ReconciliationService',
    'SweepReport',
    'SessionContext',
    'PortfolioService',
    # Aggregation
    'PortfolioSummary',
    'calculate_summary',
    'calculate_account_summaries',
    'holding_rows',
    'stored_price_history',
]
