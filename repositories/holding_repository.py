"""
Holding Repository - data access layer for Holding model.
Optimized with optional session parameter for transaction reuse.

Writes always re-read the row inside their own session, so a caller holding
an older copy of a holding can never overwrite fields it did not mean to touch.
"""

from typing import Optional, List, Dict, Any
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from db_engine import get_session
from models import AssetKind, Currency, Exchange, Holding

CASH_DEPOSIT_ATTEMPTS = 3


class HoldingRepository:
    """Repository for Holding CRUD operations. Every query is scoped to one user."""

    @staticmethod
    def add(holding: Holding, session: Optional[Session] = None) -> Holding:
        """Persist a new stock or cash holding."""
        def _create(sess: Session) -> Holding:
            sess.add(holding)
            sess.commit()
            sess.refresh(holding)
            return holding

        if session is not None:
            return _create(session)
        else:
            with get_session() as session:
                return _create(session)

    @staticmethod
    def get_by_user(user_id: str, session: Optional[Session] = None) -> List[Holding]:
        """Retrieve all holdings owned by a user."""
        def _get_by_user(sess: Session) -> List[Holding]:
            statement = select(Holding).where(Holding.user_id == user_id).order_by(Holding.id)
            return list(sess.exec(statement).all())

        if session is not None:
            return _get_by_user(session)
        else:
            with get_session() as session:
                return _get_by_user(session)

    @staticmethod
    def get_stocks(user_id: str, session: Optional[Session] = None) -> List[Holding]:
        """Retrieve all stock holdings owned by a user."""
        def _get_stocks(sess: Session) -> List[Holding]:
            statement = select(Holding).where(
                Holding.user_id == user_id,
                Holding.kind == AssetKind.STOCK
            ).order_by(Holding.id)
            return list(sess.exec(statement).all())

        if session is not None:
            return _get_stocks(session)
        else:
            with get_session() as session:
                return _get_stocks(session)

    @staticmethod
    def get_by_id(holding_id: int, user_id: str, session: Optional[Session] = None) -> Optional[Holding]:
        """Retrieve one of the user's holdings by id."""
        def _get_by_id(sess: Session) -> Optional[Holding]:
            holding = sess.get(Holding, holding_id)
            if holding is None or holding.user_id != user_id:
                return None
            return holding

        if session is not None:
            return _get_by_id(session)
        else:
            with get_session() as session:
                return _get_by_id(session)

    @staticmethod
    def find_stock(
        user_id: str,
        account_id: int,
        ticker: str,
        exchange: Exchange,
        session: Optional[Session] = None
    ) -> Optional[Holding]:
        """Find the stock holding for (ticker, exchange) in one account."""
        def _find(sess: Session) -> Optional[Holding]:
            statement = select(Holding).where(
                Holding.user_id == user_id,
                Holding.account_id == account_id,
                Holding.kind == AssetKind.STOCK,
                Holding.ticker == ticker.upper(),
                Holding.exchange == exchange
            )
            return sess.exec(statement).first()

        if session is not None:
            return _find(session)
        else:
            with get_session() as session:
                return _find(session)

    @staticmethod
    def find_cash(
        user_id: str,
        account_id: int,
        currency: Currency,
        session: Optional[Session] = None
    ) -> Optional[Holding]:
        """Find the cash holding for a currency in one account."""
        def _find(sess: Session) -> Optional[Holding]:
            statement = select(Holding).where(
                Holding.user_id == user_id,
                Holding.account_id == account_id,
                Holding.kind == AssetKind.CASH,
                Holding.currency == currency
            )
            return sess.exec(statement).first()

        if session is not None:
            return _find(session)
        else:
            with get_session() as session:
                return _find(session)

    @staticmethod
    def update_fields(
        holding_id: int,
        fields: Dict[str, Any],
        session: Optional[Session] = None
    ) -> Optional[Holding]:
        """
        Apply a partial update to the latest persisted state of a holding.

        Args:
            holding_id: Holding ID to update
            fields: Column name -> new value; columns not listed are left alone
            session: Optional existing session for transaction reuse

        Returns:
            Updated Holding object or None if not found
        """
        def _update(sess: Session) -> Optional[Holding]:
            holding = sess.get(Holding, holding_id)
            if holding is None:
                return None
            sess.refresh(holding)
            for key, value in fields.items():
                setattr(holding, key, value)
            sess.add(holding)
            sess.commit()
            sess.refresh(holding)
            return holding

        if session is not None:
            return _update(session)
        else:
            with get_session() as session:
                return _update(session)

    @staticmethod
    def deposit_cash(
        user_id: str,
        account_id: int,
        currency: Currency,
        amount: float,
        session: Optional[Session] = None
    ) -> Holding:
        """
        Add cash to an account: increments the existing balance for the
        currency, or creates the cash holding if there is none yet.

        The increment is done in SQL, and a create that loses the race against
        a concurrent deposit is retried as an increment.
        """
        def _deposit(sess: Session) -> Holding:
            for _ in range(CASH_DEPOSIT_ATTEMPTS):
                holding = HoldingRepository.find_cash(user_id, account_id, currency, sess)
                if holding is not None:
                    holding.amount = Holding.amount + amount
                    sess.add(holding)
                    sess.commit()
                    sess.refresh(holding)
                    return holding

                holding = Holding(
                    user_id=user_id,
                    account_id=account_id,
                    kind=AssetKind.CASH,
                    name=currency.display_name,
                    currency=currency,
                    amount=amount
                )
                sess.add(holding)
                try:
                    sess.commit()
                except IntegrityError:
                    sess.rollback()
                    continue
                sess.refresh(holding)
                return holding

            raise RuntimeError(f"Could not deposit {currency.value} into account {account_id}")

        if session is not None:
            return _deposit(session)
        else:
            with get_session() as session:
                return _deposit(session)

    @staticmethod
    def delete(holding_id: int, user_id: str, session: Optional[Session] = None) -> bool:
        """Delete one of the user's holdings. Returns True if it existed."""
        def _delete(sess: Session) -> bool:
            holding = sess.get(Holding, holding_id)
            if holding is None or holding.user_id != user_id:
                return False
            sess.delete(holding)
            sess.commit()
            return True

        if session is not None:
            return _delete(session)
        else:
            with get_session() as session:
                return _delete(session)
