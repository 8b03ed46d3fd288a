"""
Session context for the signed-in user.
Replaces ambient global auth state: the context is created once per browser
session, populated on sign-in and cleared on sign-out, and passed explicitly
to whatever needs the user id or the session's conversion rate.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from exceptions import NotSignedInError
from services.market_data import MarketDataService

logger = logging.getLogger(__name__)

FALLBACK_CAD_TO_USD_RATE = 1.0


@dataclass
class SessionContext:
    """Identity of the current user plus per-session cached data."""
    market_data: Optional[MarketDataService] = None
    user_id: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    _cad_to_usd_rate: Optional[float] = None

    @property
    def is_signed_in(self) -> bool:
        return self.user_id is not None

    def sign_in(self, user_id: str, display_name: Optional[str] = None, email: Optional[str] = None):
        """Populate the context from the identity provider's sign-in event."""
        self.user_id = user_id
        self.display_name = display_name
        self.email = email
        self._cad_to_usd_rate = None
        logger.info(f"User {user_id} signed in")

    def sign_out(self):
        """Forget the user and everything cached for them."""
        if self.user_id is not None:
            logger.info(f"User {self.user_id} signed out")
        self.user_id = None
        self.display_name = None
        self.email = None
        self._cad_to_usd_rate = None

    def require_user(self) -> str:
        if self.user_id is None:
            raise NotSignedInError("You must be logged in to do this.")
        return self.user_id

    def cad_to_usd_rate(self) -> float:
        """
        CAD to USD rate, fetched once per session.
        Falls back to 1.0 (CAD treated as USD) when the oracle cannot provide it.
        """
        if self._cad_to_usd_rate is not None:
            return self._cad_to_usd_rate

        rate = None
        if self.market_data is not None:
            try:
                rate = self.market_data.fetch_exchange_rate()
            except Exception as e:
                logger.warning(f"Error fetching CAD to USD rate: {e}")

        if rate is None:
            logger.warning("Could not fetch CAD to USD exchange rate. Using 1 as a fallback.")
            rate = FALLBACK_CAD_TO_USD_RATE

        self._cad_to_usd_rate = rate
        return rate
