"""
Enumerations shared by models, prompts and services.
"""

from enum import Enum


class Exchange(str, Enum):
    USA = "USA"
    CANADA = "Canada"

    @property
    def home_currency(self) -> "Currency":
        return Currency.CAD if self is Exchange.CANADA else Currency.USD


class Currency(str, Enum):
    USD = "USD"
    CAD = "CAD"

    @property
    def display_name(self) -> str:
        return "Canadian Dollars" if self is Currency.CAD else "US Dollars"


class AssetKind(str, Enum):
    STOCK = "Stock"
    CASH = "Cash"


class AccountType(str, Enum):
    TFSA = "TFSA"
    FHSA = "FHSA"
    RRSP = "RRSP"
    MARGIN = "Margin"


class HistoryRange(str, Enum):
    ONE_DAY = "1D"
    FIVE_DAYS = "5D"
    ONE_MONTH = "1M"
    ONE_YEAR = "1Y"
    FIVE_YEARS = "5Y"
    TEN_YEARS = "10Y"

    @property
    def is_intraday(self) -> bool:
        return self is HistoryRange.ONE_DAY
