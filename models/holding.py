"""
Holding model - a stock or cash position inside an account.

A single table holds both variants; ``kind`` is the discriminant. Stock rows
leave the cash columns empty and vice versa.
"""

from typing import Optional, List
from datetime import datetime
from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field

from models.enums import AssetKind, Currency, Exchange


class Holding(SQLModel, table=True):
    """A stock or cash position owned within an account."""
    __table_args__ = (
        # NULL ticker/currency never collide, so each constraint only binds its own variant
        UniqueConstraint("account_id", "ticker", "exchange", name="uq_holding_stock"),
        UniqueConstraint("account_id", "currency", name="uq_holding_cash"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    account_id: int = Field(foreign_key="account.id", index=True)
    kind: AssetKind = Field(index=True)
    name: str  # Company name, or "US Dollars" / "Canadian Dollars"

    # Stock variant
    ticker: Optional[str] = Field(default=None, index=True)  # Always uppercase
    exchange: Optional[Exchange] = Field(default=None)
    shares: float = 0.0
    avg_cost: float = 0.0  # In the exchange's home currency
    current_price: float = 0.0
    yearly_dividend: Optional[float] = Field(default=None)
    pe_ratio: Optional[float] = Field(default=None)
    forward_pe_ratio: Optional[float] = Field(default=None)
    fifty_two_week_low: Optional[float] = Field(default=None)
    fifty_two_week_high: Optional[float] = Field(default=None)
    company_profile: str = ""
    market_cap: Optional[str] = Field(default=None)  # Free text, e.g. "1.2T"
    dividend_yield: Optional[float] = Field(default=None)
    price_history: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    last_price_update: Optional[datetime] = Field(default=None)
    last_metrics_update: Optional[datetime] = Field(default=None)

    # Cash variant
    currency: Optional[Currency] = Field(default=None)
    amount: float = 0.0

    @property
    def is_stock(self) -> bool:
        return self.kind == AssetKind.STOCK

    @property
    def is_cash(self) -> bool:
        return self.kind == AssetKind.CASH
