"""
Exception hierarchy for FolioOracle.
Separates configuration, transport, response-shape and validation failures
so callers can tell a retryable outage from a bad answer or a user mistake.
"""


class FolioOracleError(Exception):
    """Base class for all application errors."""

    retryable = False


class OracleConfigurationError(FolioOracleError):
    """The oracle cannot be used at all (e.g. missing API key)."""


class OracleUnavailableError(FolioOracleError):
    """The oracle could not be reached or returned a transport-level error."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class OracleEmptyResponseError(FolioOracleError):
    """The oracle answered with no usable text."""


class OracleBlockedError(OracleEmptyResponseError):
    """The oracle refused to answer (content policy)."""


class OracleMalformedResponseError(FolioOracleError):
    """The oracle answered, but not in the requested structure."""


class AssetLookupError(FolioOracleError):
    """A lookup for a new holding did not yield ticker, name and price."""

    def __init__(self, query: str, exchange: str):
        self.query = query
        self.exchange = exchange
        super().__init__(
            f'Could not fetch data for "{query}". '
            f"Please check the company name/ticker and exchange ({exchange})."
        )


class DuplicateHoldingError(FolioOracleError):
    """A stock with the same ticker and exchange already exists in the account."""

    def __init__(self, ticker: str, exchange: str):
        self.ticker = ticker
        self.exchange = exchange
        super().__init__(f"Asset {ticker} on {exchange} is already in this account.")


class HoldingNotFoundError(FolioOracleError):
    """No holding with the given id exists for this user."""


class AccountNotFoundError(FolioOracleError):
    """No account with the given id exists for this user."""


class NotSignedInError(FolioOracleError):
    """An operation that needs a user was called without a signed-in session."""
