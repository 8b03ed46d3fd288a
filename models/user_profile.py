"""
UserProfile model - per-user settings, keyed by the identity provider's user id.
"""

from typing import Optional
from sqlmodel import SQLModel, Field


class UserProfile(SQLModel, table=True):
    """Stores optional profile data for a signed-in user."""
    user_id: str = Field(primary_key=True)
    estimated_earnings: Optional[float] = Field(default=None)  # Estimated annual earnings
