"""
Credit ledger - debits, refunds and resets of a user's credit balance.

Every balance change is a single conditional UPDATE keyed by user id, so two
sessions finishing at the same time can't lose each other's writes, and the
balance can't go negative. Each movement also writes a CreditTransaction row.

A refund tied to a session stamps the session's `compensated_at` in the same
transaction, conditional on it still being empty, so a session can be
compensated at most once no matter how many times its worker runs.
"""

import logging
from typing import Optional

from sqlalchemy import update, select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.settings import settings
from db.connection import SessionLocal
from db.models import User, CreditTransaction, PredictionSession, utcnow
from models.credits import CreditBalance, CreditStats
from src.errors import CreditError, InsufficientCreditsError, RefundError

logger = logging.getLogger(__name__)


def _to_balance(user: User) -> CreditBalance:
    return CreditBalance(
        credits=user.credits,
        total_credits_earned=user.total_credits_earned,
        total_credits_spent=user.total_credits_spent,
        credits_last_reset=user.credits_last_reset,
    )


class CreditLedger:
    """Atomic credit operations against the users table."""

    def __init__(self, session_factory=SessionLocal, config=settings):
        self.session_factory = session_factory
        self.daily_credit_reset = config.daily_credit_reset
        self.low_credit_threshold = config.low_credit_threshold
        self.signup_bonus_credits = config.signup_bonus_credits

    # =========================================================================
    # INTERNAL
    # =========================================================================

    def _current_credits(self, db: Session, user_id: str) -> Optional[int]:
        return db.execute(select(User.credits).where(User.id == user_id)).scalar_one_or_none()

    def _record(
        self,
        db: Session,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[dict],
        session_id: Optional[str],
        balance_after: int,
    ) -> None:
        metadata = metadata or {}
        db.add(CreditTransaction(
            user_id=user_id,
            amount=amount,
            reason=reason,
            market_id=metadata.get("market_id"),
            prediction_id=metadata.get("prediction_id"),
            session_id=session_id,
            balance_after=balance_after,
        ))

    # =========================================================================
    # BALANCE CHANGES
    # =========================================================================

    def consume(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[dict] = None,
        session_id: Optional[str] = None,
    ) -> int:
        """
        Debit credits from a user.

        Raises:
            InsufficientCreditsError: balance lower than `amount`
            CreditError: non-positive amount or unknown user

        Returns:
            New balance
        """
        if amount <= 0:
            raise CreditError("Credit amount must be positive")

        db = self.session_factory()
        try:
            result = db.execute(
                update(User).execution_options(synchronize_session=False)
                .where(User.id == user_id, User.credits >= amount)
                .values(
                    credits=User.credits - amount,
                    total_credits_spent=User.total_credits_spent + amount,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount == 0:
                available = self._current_credits(db, user_id)
                db.rollback()
                if available is None:
                    raise CreditError(f"User not found: {user_id}")
                raise InsufficientCreditsError(available, amount)

            balance = self._current_credits(db, user_id)
            self._record(db, user_id, -amount, reason, metadata, session_id, balance)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("Credit consumed: %s, amount: %d, reason: %s", user_id, amount, reason)
        return balance

    def add(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[dict] = None,
    ) -> int:
        """Add credits (bonuses, top-ups). Returns the new balance."""
        if amount <= 0:
            raise CreditError("Credit amount must be positive")

        db = self.session_factory()
        try:
            result = db.execute(
                update(User).execution_options(synchronize_session=False)
                .where(User.id == user_id)
                .values(
                    credits=User.credits + amount,
                    total_credits_earned=User.total_credits_earned + amount,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount == 0:
                db.rollback()
                raise CreditError(f"User not found: {user_id}")

            balance = self._current_credits(db, user_id)
            self._record(db, user_id, amount, reason, metadata, None, balance)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("Credits added: %s, amount: %d, reason: %s", user_id, amount, reason)
        return balance

    def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[dict] = None,
        session_id: Optional[str] = None,
    ) -> int:
        """
        Give back credits debited for work that produced nothing.

        Decrements total_credits_spent rather than counting as earned credits.
        With `session_id`, the refund is bounded by the session's debit and
        happens at most once per session.

        Raises:
            RefundError: invalid amount, unknown user/session, session already
                compensated, refund larger than the debit, or a storage failure

        Returns:
            New balance
        """
        if amount <= 0:
            raise RefundError("Refund amount must be positive")

        db = self.session_factory()
        try:
            if session_id is not None:
                self._mark_compensated(db, session_id, amount)

            result = db.execute(
                update(User).execution_options(synchronize_session=False)
                .where(User.id == user_id)
                .values(
                    credits=User.credits + amount,
                    total_credits_spent=User.total_credits_spent - amount,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount == 0:
                db.rollback()
                raise RefundError(f"User not found: {user_id}")

            balance = self._current_credits(db, user_id)
            self._record(db, user_id, amount, reason, metadata, session_id, balance)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise RefundError(f"Refund could not be stored: {e}") from e
        except RefundError:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("💰 Credits refunded: %s, amount: %d, reason: %s", user_id, amount, reason)
        return balance

    def _mark_compensated(self, db: Session, session_id: str, amount: int) -> None:
        """Stamp compensated_at if the session hasn't been compensated and the debit covers `amount`."""
        result = db.execute(
            update(PredictionSession).execution_options(synchronize_session=False)
            .where(
                PredictionSession.id == session_id,
                PredictionSession.compensated_at.is_(None),
                (PredictionSession.credits_debited.is_(None)) | (PredictionSession.credits_debited >= amount),
            )
            .values(compensated_at=utcnow())
        )
        if result.rowcount:
            return

        row = db.execute(
            select(PredictionSession.compensated_at, PredictionSession.credits_debited)
            .where(PredictionSession.id == session_id)
        ).first()
        if row is None:
            raise RefundError(f"Session not found: {session_id}")
        if row.compensated_at is not None:
            raise RefundError(f"Session {session_id} was already compensated")
        raise RefundError(
            f"Refund of {amount} exceeds the {row.credits_debited} credits debited for session {session_id}"
        )

    def reset_daily(self, user_id: str) -> int:
        """
        Top the user back up to the daily allowance.

        Users above the allowance keep their balance. Returns the new balance.
        """
        daily = self.daily_credit_reset
        db = self.session_factory()
        try:
            previous = self._current_credits(db, user_id)
            if previous is None:
                raise CreditError(f"User not found: {user_id}")

            db.execute(
                update(User).execution_options(synchronize_session=False)
                .where(User.id == user_id, User.credits < daily)
                .values(
                    total_credits_earned=User.total_credits_earned + (daily - User.credits),
                    credits=daily,
                )
            )
            db.execute(
                update(User).execution_options(synchronize_session=False)
                .where(User.id == user_id)
                .values(credits_last_reset=utcnow(), updated_at=utcnow())
            )
            balance = self._current_credits(db, user_id)
            if balance != previous:
                self._record(db, user_id, balance - previous, "daily_reset", None, None, balance)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("Daily credits reset for %s: %d -> %d", user_id, previous, balance)
        return balance

    def initialize_user_credits(self, user_id: str) -> int:
        """Signup bonus for a new user."""
        balance = self.add(user_id, self.signup_bonus_credits, "signup_bonus")
        logger.info("Initialized credits for new user: %s", user_id)
        return balance

    # =========================================================================
    # READS
    # =========================================================================

    def get_balance(self, user_id: str) -> CreditBalance:
        db = self.session_factory()
        try:
            user = db.get(User, user_id)
            if user is None:
                raise CreditError(f"User not found: {user_id}")
            return _to_balance(user)
        finally:
            db.close()

    def has_credits(self, user_id: str, required: int) -> bool:
        try:
            return self.get_balance(user_id).credits >= required
        except CreditError as e:
            logger.warning("Error checking credits: %s", e)
            return False

    def should_show_add_credits(self, user_id: str) -> bool:
        """Whether the user is below the low-credit threshold."""
        try:
            return self.get_balance(user_id).credits < self.low_credit_threshold
        except CreditError:
            return False

    def get_users_credits(self, user_ids: list[str]) -> dict[str, Optional[CreditBalance]]:
        """Balances for several users; unknown ids map to None."""
        db = self.session_factory()
        try:
            users = db.execute(select(User).where(User.id.in_(user_ids))).scalars().all()
            by_id = {user.id: _to_balance(user) for user in users}
            return {user_id: by_id.get(user_id) for user_id in user_ids}
        finally:
            db.close()

    def get_credit_stats(self) -> CreditStats:
        db = self.session_factory()
        try:
            totals = db.execute(
                select(
                    func.count(User.id),
                    func.coalesce(func.sum(User.credits), 0),
                    func.coalesce(func.sum(User.total_credits_earned), 0),
                    func.coalesce(func.sum(User.total_credits_spent), 0),
                )
            ).one()
            low = db.execute(
                select(func.count(User.id)).where(User.credits < self.low_credit_threshold)
            ).scalar_one()
            return CreditStats(
                total_users=totals[0],
                total_credits_in_circulation=totals[1],
                total_credits_earned=totals[2],
                total_credits_spent=totals[3],
                users_with_low_credits=low,
            )
        finally:
            db.close()
