"""
Database models for FolioOracle.
All SQLModel table definitions are centralized here.
"""

from models.enums import AccountType, AssetKind, Currency, Exchange, HistoryRange
from models.account import Account
from models.holding import Holding
from models.user_profile import UserProfile

__all__ = [
    'Account',
    'Holding',
    'UserProfile',
    'AccountType',
    'AssetKind',
    'Currency',
    'Exchange',
    'HistoryRange',
]
