"""SQLAlchemy-backed ranking store."""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from catalogrank.core.db import AsyncSessionLocal
from catalogrank.core.logging import get_logger
from catalogrank.core.repositories import (
    get_prior_state,
    update_entity_ranking,
    record_ranking_run,
    get_display_details,
)
from catalogrank.core.settings import settings
from catalogrank.ranker.errors import EntityNotFoundError, StorageUnavailableError
from catalogrank.ranker.persist import PriorState, RankingStore, RankingUpdate, RunRecord
from catalogrank.ranker.signals import EntityClass

logger = get_logger(__name__)

# Failures worth retrying: the connection, not the statement, is at fault
CONNECTION_ERRORS = (OperationalError, InterfaceError, ConnectionError, asyncio.TimeoutError)


class SqlRankingStore(RankingStore):
    """Persists ranking fields with one session and one transaction per entity."""

    def __init__(self, entity_class: EntityClass,
                 session_factory: Optional[Callable[[], AsyncSession]] = None):
        self.entity_class = EntityClass(entity_class)
        self.session_factory = session_factory or AsyncSessionLocal

    async def ping(self) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except CONNECTION_ERRORS as e:
            raise StorageUnavailableError(f"Database unreachable: {e}") from e

    async def load_prior(self, entity_ids: List[int]) -> Dict[int, PriorState]:
        async with self.session_factory() as session:
            state = await get_prior_state(session, self.entity_class.value, entity_ids)
        return {
            entity_id: PriorState(rank=rank, variation=variation)
            for entity_id, (rank, variation) in state.items()
        }

    @retry(
        stop=stop_after_attempt(settings.persist_max_attempts),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2.0),
        retry=retry_if_exception_type(CONNECTION_ERRORS),
        reraise=True,
    )
    async def _update(self, update: RankingUpdate) -> bool:
        async with self.session_factory() as session:
            return await update_entity_ranking(
                session,
                self.entity_class.value,
                update.entity_id,
                update.score,
                update.rank,
                update.variation,
            )

    async def write(self, update: RankingUpdate) -> None:
        try:
            found = await self._update(update)
        except CONNECTION_ERRORS as e:
            raise StorageUnavailableError(f"Database unreachable: {e}") from e
        if not found:
            raise EntityNotFoundError(self.entity_class.value, update.entity_id)

    async def record_run(self, record: RunRecord) -> None:
        async with self.session_factory() as session:
            await record_ranking_run(
                session,
                record.entity_class,
                record.state,
                record.stats,
                record.error_message,
                record.started_at,
                record.completed_at,
            )

    async def get_display_details(self, entity_ids: List[int]) -> Dict[int, Dict[str, Any]]:
        async with self.session_factory() as session:
            return await get_display_details(session, self.entity_class.value, entity_ids)
