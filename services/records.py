"""
Typed records produced by the response parser.
Everything the oracle may leave out is Optional; the rest of the system only
ever sees these records, never raw oracle text.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from models.enums import Exchange


@dataclass
class PriceHistoryPoint:
    """One point of a price series. OHLV are only set for OHLCV series."""
    label: str  # ISO date (YYYY-MM-DD) or intraday time
    close: float
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    volume: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"date": self.label, "close": self.close}
        for name in ("open", "high", "low", "volume"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceHistoryPoint":
        return cls(
            label=str(data.get("date") or data.get("label") or ""),
            close=float(data["close"]),
            open=data.get("open"),
            high=data.get("high"),
            low=data.get("low"),
            volume=data.get("volume"),
        )


@dataclass
class TickerMetrics:
    """
    Slow-changing fundamentals of a holding.
    A None field means "the oracle did not know", never "clear this value".
    """
    yearly_dividend: Optional[float] = None
    pe_ratio: Optional[float] = None
    forward_pe_ratio: Optional[float] = None
    fifty_two_week_low: Optional[float] = None
    fifty_two_week_high: Optional[float] = None
    company_profile: Optional[str] = None
    market_cap: Optional[str] = None
    dividend_yield: Optional[float] = None

    def known_fields(self) -> Dict[str, Any]:
        """Holding column name -> value, for every field the oracle returned."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def is_empty(self) -> bool:
        return not self.known_fields()


@dataclass
class StockSnapshot:
    """Result of a full lookup. Ticker, name and price are always present."""
    ticker: str
    name: str
    price: float
    metrics: TickerMetrics = field(default_factory=TickerMetrics)
    price_history: List[PriceHistoryPoint] = field(default_factory=list)


@dataclass
class BatchPrice:
    """One entry of a batched price refresh."""
    ticker: str
    exchange: Exchange
    price: float


@dataclass
class NewsItem:
    title: str
    source: str
    url: Optional[str]
    published_at: str  # "2h ago", "Yesterday", "2024-07-28", ...


@dataclass
class TickerDetails:
    """Everything the ticker detail page shows for a security."""
    name: str
    current_price: float
    company_profile: str = ""
    day_change: Optional[float] = None
    day_change_percent: Optional[float] = None
    market_cap: Optional[str] = None
    pe_ratio: Optional[float] = None
    dividend_yield: Optional[float] = None
    fifty_two_week_low: Optional[float] = None
    fifty_two_week_high: Optional[float] = None
    price_history: List[PriceHistoryPoint] = field(default_factory=list)


@dataclass
class QuoteUpdate:
    """
    Result of refreshing a holding that is already in the portfolio.
    Unlike StockSnapshot nothing is mandatory: whatever came back is applied.
    """
    price: Optional[float] = None
    metrics: TickerMetrics = field(default_factory=TickerMetrics)
    price_history: List[PriceHistoryPoint] = field(default_factory=list)

    def is_empty(self) -> bool:
        return self.price is None and self.metrics.is_empty() and not self.price_history
