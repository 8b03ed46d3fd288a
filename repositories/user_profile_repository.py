"""
UserProfile Repository - data access layer for UserProfile model.
"""

from typing import Optional, Dict, Any

from db_engine import get_session
from models import UserProfile


class UserProfileRepository:
    """Repository for UserProfile reads and merge-updates."""

    @staticmethod
    def get(user_id: str) -> Optional[UserProfile]:
        """Retrieve a user's profile, or None if it was never saved."""
        with get_session() as session:
            return session.get(UserProfile, user_id)

    @staticmethod
    def merge(user_id: str, fields: Dict[str, Any]) -> UserProfile:
        """Save or update a profile. Only the given fields change."""
        with get_session() as session:
            profile = session.get(UserProfile, user_id)
            if profile is None:
                profile = UserProfile(user_id=user_id)
            for key, value in fields.items():
                setattr(profile, key, value)
            session.add(profile)
            session.commit()
            session.refresh(profile)
            return profile
