"""
Repositories package for FolioOracle.
Provides data access layer for all database operations.
"""

from repositories.account_repository import AccountRepository
from repositories.holding_repository import HoldingRepository
from repositories.user_profile_repository import UserProfileRepository

__all__ = [
    'AccountRepository',
    'HoldingRepository',
    'UserProfileRepository',
]
