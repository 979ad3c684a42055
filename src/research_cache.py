"""
Research cache - stored research responses keyed by (market_id, source).

Entries are written once, after a successful provider call, and never
modified. Freshness is a policy of this class: a lookup only returns the
newest entry younger than `max_age`. Older rows stay in the table (sessions
that used them keep their links) but are never returned.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select

from config.settings import settings
from db.connection import SessionLocal
from db.models import ResearchCache as ResearchCacheDB, utcnow
from models.research import CacheEntry

logger = logging.getLogger(__name__)


def _to_entry(row: ResearchCacheDB) -> CacheEntry:
    return CacheEntry(
        id=row.id,
        market_id=row.market_id,
        source=row.source,
        response=row.response,
        model_name=row.model_name,
        created_at=row.created_at,
    )


class ResearchCache:
    """Read/write access to cached research with a max-age freshness check."""

    def __init__(self, session_factory=SessionLocal, max_age: Optional[timedelta] = None):
        self.session_factory = session_factory
        self.max_age = max_age if max_age is not None else timedelta(hours=settings.research_cache_max_age_hours)

    def is_fresh(self, entry: CacheEntry) -> bool:
        return entry.created_at >= utcnow() - self.max_age

    def get_by_source(self, market_id: str, source: str) -> Optional[CacheEntry]:
        """Newest fresh entry for (market_id, source), or None."""
        cutoff = utcnow() - self.max_age
        db = self.session_factory()
        try:
            row = db.execute(
                select(ResearchCacheDB)
                .where(
                    ResearchCacheDB.market_id == market_id,
                    ResearchCacheDB.source == source,
                    ResearchCacheDB.created_at >= cutoff,
                )
                .order_by(ResearchCacheDB.created_at.desc(), ResearchCacheDB.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_entry(row) if row else None
        finally:
            db.close()

    def create(
        self,
        market_id: str,
        source: str,
        response: dict,
        model_name: Optional[str] = None,
        system_message: Optional[str] = None,
        user_message: Optional[str] = None,
    ) -> CacheEntry:
        """Store a provider response and return the new entry."""
        db = self.session_factory()
        try:
            row = ResearchCacheDB(
                market_id=market_id,
                source=source,
                response=response,
                model_name=model_name,
                system_message=system_message,
                user_message=user_message,
                created_at=utcnow(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.debug("Cached %s research for market %s (id=%s)", source, market_id, row.id)
            return _to_entry(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
