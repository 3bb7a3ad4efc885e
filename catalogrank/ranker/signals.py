"""Signal readers: raw per-entity inputs for the popularity score.

Each reader returns one signal vector per eligible entity of its class and
never writes. Reads page through the table by id so that no eligible entity
is silently dropped by a result cap.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from catalogrank.core.db import AsyncSessionLocal
from catalogrank.core.logging import get_logger
from catalogrank.core.repositories import fetch_catalog_signal_page, fetch_review_signal_page
from catalogrank.core.settings import settings
from catalogrank.core.time import age_in_days, utc_now

logger = get_logger(__name__)

# Reaction categories stored on reviews: convincing, amusing, original, agree / disagree
POSITIVE_REACTIONS = ('c', 'a', 'o', 'y')
NEGATIVE_REACTION = 'n'


class EntityClass(str, Enum):
    """Entity classes ranked by the engine."""
    ANIME = 'anime'
    MANGA = 'manga'
    REVIEW = 'review'

    @property
    def is_catalog(self) -> bool:
        return self in (EntityClass.ANIME, EntityClass.MANGA)


@dataclass(frozen=True)
class CatalogSignals:
    """Signals for an anime or manga entry."""
    entity_id: int
    users_in_collection: int = 0
    avg_review_score: float = 0.0
    views: int = 0
    avg_collection_rating: float = 0.0
    rating_count: int = 0


@dataclass(frozen=True)
class ReviewSignals:
    """Signals for a user review."""
    entity_id: int
    total_views: int = 0
    recent_views: int = 0
    growth_ratio: float = 0.0
    avg_rating: float = 0.0
    rating_count: int = 0
    positive_reactions: int = 0
    negative_reactions: int = 0
    review_length: int = 0
    age_days: float = 0.0


Signals = Union[CatalogSignals, ReviewSignals]
SessionFactory = Callable[[], AsyncSession]


def _as_int(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


def parse_reactions(raw: Optional[str]) -> Dict[str, int]:
    """
    Count reactions per category from the review's reactions JSON.

    The stored value maps member id -> {"c": 0|1, "a": 0|1, "o": 0|1, "y": 0|1, "n": 0|1}.
    Anything unreadable counts as no reactions.
    """
    totals = {key: 0 for key in POSITIVE_REACTIONS + (NEGATIVE_REACTION,)}
    totals['members'] = 0
    if not raw:
        return totals

    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except (TypeError, ValueError):
        logger.debug("Ignoring unreadable reactions payload")
        return totals

    if not isinstance(data, dict):
        return totals

    for member_reactions in data.values():
        if not isinstance(member_reactions, dict):
            continue
        totals['members'] += 1
        for key in POSITIVE_REACTIONS + (NEGATIVE_REACTION,):
            if member_reactions.get(key) == 1:
                totals[key] += 1

    return totals


def growth_ratio(daily_views: int, weekly_views: int) -> float:
    """Today's view rate against the week's average daily rate."""
    if weekly_views <= 0:
        return 0.0
    return (daily_views * 7.0) / weekly_views


def build_review_signals(row: Dict[str, Any], now: datetime) -> ReviewSignals:
    """Turn a raw review row into its signal vector."""
    reactions = parse_reactions(row.get('reactions'))
    weekly = _as_int(row.get('views_week'))

    return ReviewSignals(
        entity_id=row['id'],
        total_views=_as_int(row.get('views')),
        recent_views=weekly,
        growth_ratio=growth_ratio(_as_int(row.get('views_day')), weekly),
        avg_rating=_as_float(row.get('rating')),
        rating_count=reactions['members'],
        positive_reactions=sum(reactions[key] for key in POSITIVE_REACTIONS),
        negative_reactions=reactions[NEGATIVE_REACTION],
        review_length=_as_int(row.get('length')),
        age_days=age_in_days(row.get('created_at'), now),
    )


def build_catalog_signals(row: Dict[str, Any]) -> CatalogSignals:
    """Turn an aggregated catalog row into its signal vector."""
    return CatalogSignals(
        entity_id=row['id'],
        users_in_collection=_as_int(row.get('users_in_collection')),
        avg_review_score=_as_float(row.get('avg_review_score')),
        views=_as_int(row.get('views')),
        avg_collection_rating=_as_float(row.get('avg_collection_rating')),
        rating_count=_as_int(row.get('rating_count')),
    )


class SignalReader(ABC):
    """Read interface returning one signal vector per eligible entity."""

    entity_class: EntityClass

    @abstractmethod
    async def read_signals(self) -> List[Signals]:
        """Return signals for every eligible entity of this reader's class."""


class _PagedSignalReader(SignalReader):
    """Keyset-paginated reader over a single table."""

    def __init__(self, session_factory: Optional[SessionFactory] = None,
                 page_size: Optional[int] = None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.page_size = page_size or settings.signal_page_size

    async def _fetch_page(self, session: AsyncSession, after_id: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _build(self, row: Dict[str, Any]) -> Signals:
        raise NotImplementedError

    async def read_signals(self) -> List[Signals]:
        signals = []
        after_id = 0
        pages = 0

        async with self.session_factory() as session:
            while True:
                rows = await self._fetch_page(session, after_id)
                pages += 1
                signals.extend(self._build(row) for row in rows)
                if len(rows) < self.page_size:
                    break
                after_id = rows[-1]['id']

        logger.info(f"Read {len(signals)} {self.entity_class.value} signal vectors in {pages} page(s)")
        return signals


class CatalogSignalReader(_PagedSignalReader):
    """Signals for published anime or manga entries."""

    def __init__(self, entity_class: EntityClass, min_ratings: Optional[int] = None,
                 session_factory: Optional[SessionFactory] = None,
                 page_size: Optional[int] = None):
        if not EntityClass(entity_class).is_catalog:
            raise ValueError(f"Not a catalog entity class: {entity_class}")
        super().__init__(session_factory, page_size)
        self.entity_class = EntityClass(entity_class)
        self.min_ratings = settings.ranking_min_ratings if min_ratings is None else min_ratings

    async def _fetch_page(self, session: AsyncSession, after_id: int) -> List[Dict[str, Any]]:
        return await fetch_catalog_signal_page(
            session,
            self.entity_class.value,
            after_id=after_id,
            limit=self.page_size,
            min_ratings=self.min_ratings,
        )

    def _build(self, row: Dict[str, Any]) -> Signals:
        return build_catalog_signals(row)


class ReviewSignalReader(_PagedSignalReader):
    """Signals for published reviews."""

    entity_class = EntityClass.REVIEW

    def __init__(self, session_factory: Optional[SessionFactory] = None,
                 page_size: Optional[int] = None, now: Optional[datetime] = None):
        super().__init__(session_factory, page_size)
        self.now = now

    async def read_signals(self) -> List[Signals]:
        # One reference instant per run keeps age-derived scores consistent
        self._run_now = self.now or utc_now()
        return await super().read_signals()

    async def _fetch_page(self, session: AsyncSession, after_id: int) -> List[Dict[str, Any]]:
        return await fetch_review_signal_page(session, after_id=after_id, limit=self.page_size)

    def _build(self, row: Dict[str, Any]) -> Signals:
        return build_review_signals(row, self._run_now)
