"""
Portfolio service for holdings, accounts and summary valuation.
All values are reported in USD: Canadian holdings and CAD cash are converted
with the session's single CAD to USD rate.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from typing import assert_never

from sqlalchemy.exc import IntegrityError

from exceptions import (
    AccountNotFoundError,
    AssetLookupError,
    DuplicateHoldingError,
    HoldingNotFoundError,
)
from models import Account, AccountType, AssetKind, Currency, Exchange, Holding, UserProfile
from repositories import AccountRepository, HoldingRepository, UserProfileRepository
from services.market_data import MarketDataService
from services.reconciliation import quote_update_fields, utc_now
from services.records import PriceHistoryPoint
from services.subscriptions import HoldingFeed

logger = logging.getLogger(__name__)


@dataclass
class PortfolioSummary:
    """Aggregated valuation of a set of holdings, in USD."""
    total_market_value: float = 0.0
    total_cost: float = 0.0
    total_gain_loss: float = 0.0
    day_gain_loss: float = 0.0  # Not computed from intraday data; always 0
    overall_return: float = 0.0  # Percent


@dataclass
class HoldingValuation:
    """Market value and cost of one holding, in USD."""
    market_value: float
    cost: float

    @property
    def gain_loss(self) -> float:
        return self.market_value - self.cost

    @property
    def return_pct(self) -> float:
        return 0.0 if self.cost == 0 else self.gain_loss / self.cost * 100


def conversion_factor(holding: Holding, cad_to_usd_rate: Optional[float]) -> float:
    """Multiplier that converts a holding's home-currency amounts to USD."""
    rate = 1.0 if cad_to_usd_rate is None else cad_to_usd_rate
    match holding.kind:
        case AssetKind.STOCK:
            return rate if holding.exchange == Exchange.CANADA else 1.0
        case AssetKind.CASH:
            return rate if holding.currency == Currency.CAD else 1.0
        case _:
            assert_never(holding.kind)


def value_holding(holding: Holding, cad_to_usd_rate: Optional[float]) -> HoldingValuation:
    """Market value and cost of a holding. Cash is worth its cost (no gain or loss)."""
    factor = conversion_factor(holding, cad_to_usd_rate)
    match holding.kind:
        case AssetKind.STOCK:
            return HoldingValuation(
                market_value=holding.shares * holding.current_price * factor,
                cost=holding.shares * holding.avg_cost * factor,
            )
        case AssetKind.CASH:
            value = holding.amount * factor
            return HoldingValuation(market_value=value, cost=value)
        case _:
            assert_never(holding.kind)


def calculate_summary(holdings: Iterable[Holding], cad_to_usd_rate: Optional[float]) -> PortfolioSummary:
    """
    Summarize any subset of holdings (whole portfolio or one account).

    Args:
        holdings: Stock and cash holdings
        cad_to_usd_rate: CAD to USD rate; None is treated as 1.0

    Returns:
        PortfolioSummary; overall_return is 0 when total cost is 0
    """
    summary = PortfolioSummary()
    for holding in holdings:
        valuation = value_holding(holding, cad_to_usd_rate)
        summary.total_market_value += valuation.market_value
        summary.total_cost += valuation.cost

    summary.total_gain_loss = summary.total_market_value - summary.total_cost
    summary.overall_return = (
        0.0 if summary.total_cost == 0
        else summary.total_gain_loss / summary.total_cost * 100
    )
    return summary


def calculate_account_summaries(
    accounts: Iterable[Account],
    holdings: Iterable[Holding],
    cad_to_usd_rate: Optional[float]
) -> List[Tuple[Account, PortfolioSummary]]:
    """Per-account summaries, in the order the accounts were given."""
    holdings = list(holdings)
    return [
        (account, calculate_summary([h for h in holdings if h.account_id == account.id], cad_to_usd_rate))
        for account in accounts
    ]


def holding_row(holding: Holding, cad_to_usd_rate: Optional[float]) -> Dict[str, Any]:
    """
    One display row for a holding. Prices stay in the listing currency; market
    value and gain/loss are in USD so rows add up to the summary totals.
    """
    valuation = value_holding(holding, cad_to_usd_rate)
    row: Dict[str, Any] = {
        "Name": holding.name,
        "Ticker": None,
        "Exchange": None,
        "Currency": None,
        "Shares": None,
        "Avg Cost": None,
        "Price": None,
        "Market Value (USD)": valuation.market_value,
        "Gain/Loss (USD)": valuation.gain_loss,
        "Gain/Loss %": valuation.return_pct,
        "Annual Dividend": None,
        "P/E": None,
        "Forward P/E": None,
        "52W Low": None,
        "52W High": None,
        "Div Yield %": None,
        "Updated": None,
    }
    match holding.kind:
        case AssetKind.STOCK:
            row.update({
                "Ticker": holding.ticker,
                "Exchange": holding.exchange.value,
                "Currency": holding.exchange.home_currency.value,
                "Shares": holding.shares,
                "Avg Cost": holding.avg_cost,
                "Price": holding.current_price,
                "Annual Dividend": holding.yearly_dividend if holding.yearly_dividend else None,
                "P/E": holding.pe_ratio,
                "Forward P/E": holding.forward_pe_ratio,
                "52W Low": holding.fifty_two_week_low,
                "52W High": holding.fifty_two_week_high,
                "Div Yield %": holding.dividend_yield,
                "Updated": holding.last_price_update,
            })
        case AssetKind.CASH:
            row["Currency"] = holding.currency.value
        case _:
            assert_never(holding.kind)
    return row


def holding_rows(holdings: Iterable[Holding], cad_to_usd_rate: Optional[float]) -> List[Dict[str, Any]]:
    return [holding_row(h, cad_to_usd_rate) for h in holdings]


def stored_price_history(holding: Holding) -> List[PriceHistoryPoint]:
    """The close series saved with the holding at its last full lookup."""
    return [PriceHistoryPoint.from_dict(point) for point in holding.price_history or []]


class PortfolioService:
    """
    User-facing portfolio operations.
    Every write is followed by a feed publish so views re-render from the
    persisted state.
    """

    def __init__(
        self,
        market_data: MarketDataService,
        feed: Optional[HoldingFeed] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.market_data = market_data
        self.feed = feed
        self.clock = clock

    def _publish(self, user_id: str):
        if self.feed is not None:
            self.feed.publish(user_id)

    def _require_account(self, user_id: str, account_id: int) -> Account:
        account = AccountRepository.get_by_id(account_id, user_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    # ==================== ACCOUNTS ====================
    def create_account(self, user_id: str, name: str, account_type: AccountType) -> Account:
        name = name.strip()
        if not name:
            raise ValueError("Account name is required.")
        account = AccountRepository.add(user_id, name, account_type)
        logger.info(f"Created {account_type.value} account {name!r} for user {user_id}")
        return account

    def list_accounts(self, user_id: str) -> List[Account]:
        return AccountRepository.get_by_user(user_id)

    def delete_account(self, user_id: str, account_id: int):
        """Delete an account and all of its holdings. Irreversible."""
        if not AccountRepository.delete(account_id, user_id):
            raise AccountNotFoundError(f"Account {account_id} not found")
        self._publish(user_id)

    # ==================== HOLDINGS ====================
    def list_holdings(self, user_id: str) -> List[Holding]:
        return HoldingRepository.get_by_user(user_id)

    def add_stock_holding(
        self,
        user_id: str,
        account_id: int,
        query: str,
        shares: float,
        avg_cost: float,
        exchange: Exchange
    ) -> Holding:
        """
        Look up a stock by ticker or company name and add it to an account.

        Raises:
            ValueError: invalid query, shares or average cost
            AccountNotFoundError: the account does not belong to the user
            DuplicateHoldingError: (ticker, exchange) is already in the account
            AssetLookupError: the oracle did not return ticker, name and price
        """
        query = query.strip()
        if not query or shares <= 0 or avg_cost < 0:
            raise ValueError("Please fill in all fields with valid numbers.")
        self._require_account(user_id, account_id)

        # A query that already is a held ticker is rejected without an oracle call
        if HoldingRepository.find_stock(user_id, account_id, query.upper(), exchange):
            raise DuplicateHoldingError(query.upper(), exchange.value)

        snapshot = self.market_data.fetch_asset_data(query, exchange, include_history=True)
        if snapshot is None:
            raise AssetLookupError(query, exchange.value)

        if HoldingRepository.find_stock(user_id, account_id, snapshot.ticker, exchange):
            raise DuplicateHoldingError(snapshot.ticker, exchange.value)

        now = self.clock()
        metrics = snapshot.metrics
        holding = Holding(
            user_id=user_id,
            account_id=account_id,
            kind=AssetKind.STOCK,
            name=snapshot.name,
            ticker=snapshot.ticker,
            exchange=exchange,
            shares=shares,
            avg_cost=avg_cost,
            current_price=snapshot.price,
            yearly_dividend=metrics.yearly_dividend,
            pe_ratio=metrics.pe_ratio,
            forward_pe_ratio=metrics.forward_pe_ratio,
            fifty_two_week_low=metrics.fifty_two_week_low,
            fifty_two_week_high=metrics.fifty_two_week_high,
            company_profile=metrics.company_profile or "",
            market_cap=metrics.market_cap,
            dividend_yield=metrics.dividend_yield,
            price_history=[point.to_dict() for point in snapshot.price_history],
            last_price_update=now,
            last_metrics_update=now,
        )
        try:
            holding = HoldingRepository.add(holding)
        except IntegrityError as e:
            # Another writer added the same stock after the checks above
            raise DuplicateHoldingError(snapshot.ticker, exchange.value) from e
        logger.info(f"Added {snapshot.ticker} ({exchange.value}) to account {account_id}")
        self._publish(user_id)
        return holding

    def deposit_cash(self, user_id: str, account_id: int, amount: float, currency: Currency) -> Holding:
        """Add cash to an account; same-currency deposits accumulate in one holding."""
        if amount <= 0:
            raise ValueError("Please enter a valid, positive amount.")
        self._require_account(user_id, account_id)

        holding = HoldingRepository.deposit_cash(user_id, account_id, currency, amount)
        logger.info(f"Deposited {amount} {currency.value} into account {account_id}")
        self._publish(user_id)
        return holding

    def remove_holding(self, user_id: str, holding_id: int):
        """Delete a holding immediately. Irreversible."""
        if not HoldingRepository.delete(holding_id, user_id):
            raise HoldingNotFoundError(f"Holding {holding_id} not found")
        self._publish(user_id)

    def refresh_holding(self, user_id: str, holding_id: int) -> Holding:
        """
        User-requested refresh of one stock holding.
        Partial answers are applied; fields the oracle could not provide keep
        their previous values.
        """
        holding = HoldingRepository.get_by_id(holding_id, user_id)
        if holding is None:
            raise HoldingNotFoundError(f"Holding {holding_id} not found")
        if holding.kind != AssetKind.STOCK:
            raise ValueError("Only stock holdings can be refreshed.")

        update = self.market_data.fetch_quote_update(holding.ticker, holding.exchange)
        if update.is_empty():
            logger.info(f"Refresh of {holding.ticker} returned nothing to update")
            return holding

        updated = HoldingRepository.update_fields(holding_id, quote_update_fields(update, self.clock()))
        self._publish(user_id)
        return updated

    # ==================== SUMMARIES ====================
    def total_summary(self, user_id: str, cad_to_usd_rate: Optional[float]) -> PortfolioSummary:
        return calculate_summary(HoldingRepository.get_by_user(user_id), cad_to_usd_rate)

    def account_summaries(
        self,
        user_id: str,
        cad_to_usd_rate: Optional[float]
    ) -> List[Tuple[Account, PortfolioSummary]]:
        return calculate_account_summaries(
            AccountRepository.get_by_user(user_id),
            HoldingRepository.get_by_user(user_id),
            cad_to_usd_rate
        )

    # ==================== PROFILE ====================
    @staticmethod
    def get_user_profile(user_id: str) -> Optional[UserProfile]:
        return UserProfileRepository.get(user_id)

    @staticmethod
    def update_user_profile(user_id: str, estimated_earnings: Optional[float]) -> UserProfile:
        """Merge profile fields. Negative or NaN earnings are stored as 0."""
        if estimated_earnings is not None and (math.isnan(estimated_earnings) or estimated_earnings < 0):
            estimated_earnings = 0.0
        return UserProfileRepository.merge(user_id, {"estimated_earnings": estimated_earnings})
