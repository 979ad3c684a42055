"""
Session store - persistence for prediction sessions.

The store is the only writer of a session's status/step/error fields and
enforces the state machine on every write: a session in FINISHED or ERROR is
never modified again. Storage failures surface as InfrastructureError, which
is what the worker's retry wrapper retries on.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional

from sqlalchemy import select, update, delete, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.connection import SessionLocal
from db.models import (
    Market as MarketDB,
    Prediction as PredictionDB,
    PredictionSession as PredictionSessionDB,
    prediction_session_research,
    utcnow,
)
from models.market import MarketContext
from models.session import (
    ACTIVE_STATUSES,
    PredictionSessionData,
    SessionStatus,
    SessionUpdate,
    check_transition,
)
from src.errors import InfrastructureError, InvalidTransitionError, SessionNotFoundError

logger = logging.getLogger(__name__)


def _to_data(row: PredictionSessionDB) -> PredictionSessionData:
    return PredictionSessionData(
        id=row.id,
        user_id=row.user_id,
        market_id=row.market_id,
        selected_models=list(row.selected_models or []),
        selected_research_sources=list(row.selected_research_sources or []),
        status=row.status,
        step=row.step,
        error=row.error,
        credits_debited=row.credits_debited,
        compensated_at=row.compensated_at,
        prediction_ids=[p.id for p in row.predictions],
        created_at=row.created_at,
        completed_at=row.completed_at,
    )


class SessionStore:
    """Read and mutate prediction sessions."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """Session scope that commits on success and maps storage errors to InfrastructureError."""
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise InfrastructureError(f"Session store unavailable: {e}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, session_id: str) -> Optional[PredictionSessionData]:
        """Load a session, or None if it doesn't exist."""
        with self._transaction() as db:
            row = db.get(PredictionSessionDB, session_id)
            return _to_data(row) if row else None

    def get_market(self, market_id: str) -> Optional[MarketContext]:
        with self._transaction() as db:
            market = db.get(MarketDB, market_id)
            return MarketContext.from_orm_market(market) if market else None

    def find_stuck(self, older_than: datetime, limit: int = 20) -> list[PredictionSessionData]:
        """Non-terminal sessions created before `older_than`, oldest first."""
        with self._transaction() as db:
            rows = db.execute(
                select(PredictionSessionDB)
                .where(
                    PredictionSessionDB.status.in_(list(ACTIVE_STATUSES)),
                    PredictionSessionDB.created_at < older_than,
                )
                .order_by(PredictionSessionDB.created_at)
                .limit(limit)
            ).scalars().all()
            return [_to_data(row) for row in rows]

    # =========================================================================
    # WRITES
    # =========================================================================

    def create(
        self,
        user_id: str,
        market_id: str,
        selected_models: list[str],
        selected_research_sources: Iterable[str] = (),
        credits_debited: Optional[int] = None,
        status: SessionStatus = SessionStatus.INITIALIZING,
    ) -> PredictionSessionData:
        """
        Create a session.

        Normally done by the request layer after it debits the user; used here
        by tooling and tests. `credits_debited` defaults to one per model.
        """
        data = PredictionSessionData(
            id="pending",
            user_id=user_id,
            market_id=market_id,
            selected_models=selected_models,
            selected_research_sources=list(selected_research_sources),
            status=status,
        )
        with self._transaction() as db:
            row = PredictionSessionDB(
                user_id=user_id,
                market_id=market_id,
                selected_models=data.selected_models,
                selected_research_sources=data.selected_research_sources,
                status=status,
                credits_debited=credits_debited if credits_debited is not None else len(data.selected_models),
                created_at=utcnow(),
            )
            db.add(row)
            db.flush()
            return _to_data(row)

    def update(
        self,
        session_id: str,
        *,
        status: Optional[SessionStatus] = None,
        step: Optional[str] = None,
        error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        """
        Apply a status/step/error patch.

        Raises:
            SessionNotFoundError: unknown session id
            InvalidTransitionError: the session is terminal, or the status change isn't allowed
            InfrastructureError: storage failure
        """
        patch = SessionUpdate(
            **{
                key: value
                for key, value in {
                    "status": status, "step": step, "error": error, "completed_at": completed_at,
                }.items()
                if value is not None
            }
        ).as_patch()

        with self._transaction() as db:
            row = db.execute(
                select(PredictionSessionDB)
                .where(PredictionSessionDB.id == session_id)
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise SessionNotFoundError(session_id)

            current = SessionStatus(row.status)
            if current.is_terminal:
                raise InvalidTransitionError(current.value, (status or current).value)
            if status is not None:
                check_transition(current, status)
                if status == SessionStatus.FINISHED and "completed_at" not in patch:
                    patch["completed_at"] = utcnow()

            for key, value in patch.items():
                setattr(row, key, value)

        if status is not None:
            logger.debug("Session %s: %s -> %s (%s)", session_id, current.value, status.value, step or "")

    def link_prediction(self, prediction_id: int, session_id: str) -> None:
        """Point a prediction row at its session."""
        with self._transaction() as db:
            result = db.execute(
                update(PredictionDB)
                .where(PredictionDB.id == prediction_id)
                .values(session_id=session_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.warning("Prediction %s not found when linking to session %s", prediction_id, session_id)

    def link_research(self, session_id: str, cache_id: int) -> None:
        """Attach a research cache entry to a session (idempotent)."""
        with self._transaction() as db:
            exists = db.execute(
                select(prediction_session_research.c.session_id).where(
                    prediction_session_research.c.session_id == session_id,
                    prediction_session_research.c.research_cache_id == cache_id,
                )
            ).first()
            if not exists:
                db.execute(
                    insert(prediction_session_research).values(session_id=session_id, research_cache_id=cache_id)
                )

    def delete_old_failed(self, older_than: datetime) -> int:
        """Delete ERROR sessions created before `older_than`. Returns the number deleted."""
        with self._transaction() as db:
            ids = db.execute(
                select(PredictionSessionDB.id).where(
                    PredictionSessionDB.status == SessionStatus.ERROR,
                    PredictionSessionDB.created_at < older_than,
                )
            ).scalars().all()
            if not ids:
                return 0

            # Predictions outlive their session
            db.execute(
                update(PredictionDB)
                .where(PredictionDB.session_id.in_(ids))
                .values(session_id=None)
                .execution_options(synchronize_session=False)
            )
            db.execute(
                delete(prediction_session_research).where(prediction_session_research.c.session_id.in_(ids))
            )
            db.execute(
                delete(PredictionSessionDB)
                .where(PredictionSessionDB.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            return len(ids)
