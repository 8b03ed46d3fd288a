"""
Account Repository - data access layer for Account model.
Optimized with optional session parameter for transaction reuse.
"""

from typing import Optional, List
from sqlmodel import Session, select

from db_engine import get_session
from models import Account, AccountType, Holding


class AccountRepository:
    """Repository for Account CRUD operations. Every query is scoped to one user."""

    @staticmethod
    def add(
        user_id: str,
        name: str,
        account_type: AccountType,
        session: Optional[Session] = None
    ) -> Account:
        """
        Add a new account for a user.

        Args:
            user_id: Owner's identity-provider user id
            name: Display name (uniqueness is not enforced)
            account_type: TFSA, FHSA, RRSP or Margin
            session: Optional existing session for transaction reuse

        Returns:
            Created Account object
        """
        def _create_account(sess: Session) -> Account:
            account = Account(user_id=user_id, name=name, account_type=account_type)
            sess.add(account)
            sess.commit()
            sess.refresh(account)
            return account

        if session is not None:
            return _create_account(session)
        else:
            with get_session() as session:
                return _create_account(session)

    @staticmethod
    def get_by_user(user_id: str, session: Optional[Session] = None) -> List[Account]:
        """Retrieve a user's accounts sorted by name."""
        def _get_by_user(sess: Session) -> List[Account]:
            statement = select(Account).where(Account.user_id == user_id)
            accounts = list(sess.exec(statement).all())
            return sorted(accounts, key=lambda a: a.name.lower())

        if session is not None:
            return _get_by_user(session)
        else:
            with get_session() as session:
                return _get_by_user(session)

    @staticmethod
    def get_by_id(account_id: int, user_id: str, session: Optional[Session] = None) -> Optional[Account]:
        """Retrieve one of the user's accounts by id."""
        def _get_by_id(sess: Session) -> Optional[Account]:
            account = sess.get(Account, account_id)
            if account is None or account.user_id != user_id:
                return None
            return account

        if session is not None:
            return _get_by_id(session)
        else:
            with get_session() as session:
                return _get_by_id(session)

    @staticmethod
    def delete(account_id: int, user_id: str, session: Optional[Session] = None) -> bool:
        """
        Delete an account and every holding in it.
        Holdings are deleted first due to foreign key constraints.

        Returns:
            True if the account existed and was deleted
        """
        def _delete(sess: Session) -> bool:
            try:
                account = sess.get(Account, account_id)
                if account is None or account.user_id != user_id:
                    return False

                statement = select(Holding).where(Holding.account_id == account_id)
                for holding in sess.exec(statement).all():
                    sess.delete(holding)

                sess.delete(account)
                sess.commit()
                return True
            except Exception:
                sess.rollback()
                raise

        if session is not None:
            return _delete(session)
        else:
            with get_session() as session:
                return _delete(session)
