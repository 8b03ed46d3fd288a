"""
Account model - a brokerage account owned by one user.
"""

from typing import Optional
from sqlmodel import SQLModel, Field

from models.enums import AccountType


class Account(SQLModel, table=True):
    """Represents a brokerage account (TFSA, RRSP, ...)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    name: str
    account_type: AccountType
