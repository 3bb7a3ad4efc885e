"""Repository layer for database operations.

Provides the async reads that feed the signal readers and the single-row
updates the ranking store issues. Every function takes the session it
works in; callers own session lifetime and concurrency.
"""

from datetime import datetime
from typing import List, Optional, Dict, Any, Iterable, Tuple

from sqlalchemy import select, func, update, insert, case, distinct, desc
from sqlalchemy.ext.asyncio import AsyncSession

from catalogrank.core.models import (
    Anime, Manga, AnimeCollection, MangaCollection, Review, RankingRun,
    CATALOG_PUBLISHED, REVIEW_PUBLISHED
)
from catalogrank.core.logging import get_logger

logger = get_logger(__name__)

# entity class -> ranked model
RANKED_MODELS = {
    'anime': Anime,
    'manga': Manga,
    'review': Review,
}

# catalog class -> (collection model, foreign key column)
COLLECTION_MODELS = {
    'anime': (AnimeCollection, AnimeCollection.anime_id),
    'manga': (MangaCollection, MangaCollection.manga_id),
}

VIEW_COUNTER_COLUMNS = {
    'daily': 'views_day',
    'weekly': 'views_week',
    'monthly': 'views_month',
}

IN_CLAUSE_CHUNK = 1000


def _ranked_model(entity_class: str):
    try:
        return RANKED_MODELS[entity_class]
    except KeyError:
        raise ValueError(f"Unknown entity class: {entity_class}")


def _chunks(ids: List[int], size: int) -> Iterable[List[int]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


async def fetch_catalog_signal_page(
    session: AsyncSession,
    entity_class: str,
    after_id: int = 0,
    limit: int = 1000,
    min_ratings: int = 0
) -> List[Dict[str, Any]]:
    """
    Fetch one page of aggregated catalog signals, ordered by id.

    Args:
        session: Database session
        entity_class: 'anime' or 'manga'
        after_id: Keyset cursor; only ids greater than this are returned
        limit: Page size
        min_ratings: Minimum number of collection ratings to be eligible

    Returns:
        List of dicts with id, users_in_collection, avg_review_score, views,
        avg_collection_rating and rating_count
    """
    if entity_class not in COLLECTION_MODELS:
        raise ValueError(f"Not a catalog entity class: {entity_class}")

    model = RANKED_MODELS[entity_class]
    collection, foreign_key = COLLECTION_MODELS[entity_class]

    rated = case((collection.evaluation > 0, collection.evaluation))
    rating_count = func.count(rated)

    stmt = (
        select(
            model.id.label('id'),
            model.avg_review_score.label('avg_review_score'),
            model.views.label('views'),
            func.count(distinct(collection.member_id)).label('users_in_collection'),
            func.avg(rated).label('avg_collection_rating'),
            rating_count.label('rating_count'),
        )
        .select_from(model)
        .outerjoin(collection, foreign_key == model.id)
        .where(model.status == CATALOG_PUBLISHED, model.id > after_id)
        .group_by(model.id)
        .order_by(model.id)
        .limit(limit)
    )
    if min_ratings > 0:
        stmt = stmt.having(rating_count >= min_ratings)

    result = await session.execute(stmt)
    rows = [dict(row) for row in result.mappings().all()]

    logger.debug(f"Fetched {len(rows)} {entity_class} signal rows after id {after_id}")
    return rows


async def fetch_review_signal_page(
    session: AsyncSession,
    after_id: int = 0,
    limit: int = 1000
) -> List[Dict[str, Any]]:
    """Fetch one page of raw review counters for published reviews, ordered by id."""
    stmt = (
        select(
            Review.id,
            Review.views,
            Review.views_day,
            Review.views_week,
            Review.rating,
            Review.reactions,
            Review.length,
            Review.created_at,
        )
        .where(Review.status == REVIEW_PUBLISHED, Review.id > after_id)
        .order_by(Review.id)
        .limit(limit)
    )
    result = await session.execute(stmt)
    rows = [dict(row) for row in result.mappings().all()]

    logger.debug(f"Fetched {len(rows)} review signal rows after id {after_id}")
    return rows


async def get_prior_state(
    session: AsyncSession,
    entity_class: str,
    entity_ids: List[int]
) -> Dict[int, Tuple[int, Optional[str]]]:
    """
    Read the rank and variation column currently stored for each entity.

    Returns:
        Mapping entity id -> (rank, raw variation value)
    """
    model = _ranked_model(entity_class)
    state = {}

    for chunk in _chunks(list(entity_ids), IN_CLAUSE_CHUNK):
        stmt = (
            select(model.id, model.popularity_rank, model.popularity_variation)
            .where(model.id.in_(chunk))
        )
        result = await session.execute(stmt)
        for entity_id, rank, variation in result.all():
            state[entity_id] = (rank or 0, variation)

    return state


async def update_entity_ranking(
    session: AsyncSession,
    entity_class: str,
    entity_id: int,
    score: float,
    rank: int,
    variation: Optional[str]
) -> bool:
    """
    Write score, rank and variation for one entity in a single statement.

    Returns:
        True if a row was updated, False if the entity no longer exists
    """
    model = _ranked_model(entity_class)
    stmt = (
        update(model)
        .where(model.id == entity_id)
        .values(
            popularity_score=score,
            popularity_rank=rank,
            popularity_variation=variation,
        )
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount > 0


async def get_display_details(
    session: AsyncSession,
    entity_class: str,
    entity_ids: List[int]
) -> Dict[int, Dict[str, Any]]:
    """Titles (and year for catalog entries) used in top-K previews."""
    model = _ranked_model(entity_class)
    if not entity_ids:
        return {}

    if entity_class == 'review':
        stmt = select(Review.id, Review.title, Review.author_name).where(Review.id.in_(entity_ids))
        result = await session.execute(stmt)
        return {
            row.id: {'title': row.title or 'Untitled', 'author': row.author_name}
            for row in result.all()
        }

    stmt = select(model.id, model.title, model.year).where(model.id.in_(entity_ids))
    result = await session.execute(stmt)
    return {row.id: {'title': row.title, 'year': row.year} for row in result.all()}


async def get_review_job_stats(session: AsyncSession, top_k: int = 10) -> Dict[str, Any]:
    """Coverage and score statistics for published reviews."""
    published = Review.status == REVIEW_PUBLISHED
    scored = Review.popularity_score.isnot(None)

    total = await session.scalar(select(func.count()).select_from(Review).where(published))
    with_score = await session.scalar(
        select(func.count()).select_from(Review).where(published, scored)
    )
    average = await session.scalar(select(func.avg(Review.popularity_score)).where(published, scored))

    stmt = (
        select(
            Review.id,
            Review.title,
            Review.author_name,
            Review.popularity_score,
            Review.popularity_rank,
            Review.popularity_variation,
            Review.views,
        )
        .where(published, scored)
        .order_by(desc(Review.popularity_score), Review.id)
        .limit(top_k)
    )
    result = await session.execute(stmt)
    top = [
        {
            'id': row.id,
            'title': row.title or 'Untitled',
            'author': row.author_name,
            'score': round(float(row.popularity_score), 2),
            'rank': row.popularity_rank,
            'views': row.views or 0,
            'variation': row.popularity_variation,
        }
        for row in result.all()
    ]

    return {
        'total': total or 0,
        'with_score': with_score or 0,
        'average_score': float(average or 0.0),
        'top': top,
    }


async def record_ranking_run(
    session: AsyncSession,
    entity_class: str,
    state: str,
    stats: Optional[Dict[str, Any]],
    error_message: Optional[str],
    started_at: datetime,
    completed_at: Optional[datetime]
) -> None:
    """Insert one row in the ranking run audit trail."""
    stmt = insert(RankingRun).values(
        entity_class=entity_class,
        state=state,
        stats=stats,
        error_message=error_message,
        started_at=started_at,
        completed_at=completed_at,
    )
    await session.execute(stmt)
    await session.commit()


async def get_last_completed_run(session: AsyncSession, entity_class: str) -> Optional[RankingRun]:
    """Most recent successfully completed run for an entity class."""
    stmt = (
        select(RankingRun)
        .where(RankingRun.entity_class == entity_class, RankingRun.state == 'done')
        .order_by(desc(RankingRun.completed_at))
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def reset_review_view_counters(session: AsyncSession, window: str) -> int:
    """
    Zero one of the rolling review view counters.

    Args:
        window: 'daily', 'weekly' or 'monthly'

    Returns:
        Number of rows touched
    """
    column = VIEW_COUNTER_COLUMNS.get(window)
    if column is None:
        raise ValueError(f"Unknown counter window: {window}")

    stmt = update(Review).values({column: 0})
    result = await session.execute(stmt)
    await session.commit()

    logger.info(f"Reset {window} review view counters on {result.rowcount} rows")
    return result.rowcount
