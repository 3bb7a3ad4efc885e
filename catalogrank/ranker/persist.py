"""Batched, failure-isolated persistence of ranking results.

Updates are written in fixed-size batches. Inside a batch every write runs
concurrently behind a semaphore; batches run one after another with a short
pause to bound load on the database. A failed write is logged and counted
and never stops the other writes.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from catalogrank.core.logging import get_logger
from catalogrank.core.settings import settings
from catalogrank.ranker.errors import StorageUnavailableError

logger = get_logger(__name__)


@dataclass
class RankingUpdate:
    """New ranking fields for one entity."""
    entity_id: int
    score: float
    rank: int
    variation: Optional[str]  # marker for catalog entries, history JSON for reviews


@dataclass
class PriorState:
    """Ranking fields stored before this run."""
    rank: int = 0
    variation: Optional[str] = None


@dataclass
class RunRecord:
    """Audit row for one ranking run."""
    entity_class: str
    state: str
    stats: Optional[Dict[str, Any]]
    error_message: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]


@dataclass
class PersistResult:
    """Outcome of persisting a set of updates."""
    updated_count: int = 0
    error_count: int = 0
    failed_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'updated_count': self.updated_count,
            'error_count': self.error_count,
            'failed_ids': list(self.failed_ids),
        }


class RankingStore(ABC):
    """Write interface for ranking results (plus the prior state it replaces)."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise StorageUnavailableError if storage cannot be reached."""

    @abstractmethod
    async def load_prior(self, entity_ids: List[int]) -> Dict[int, PriorState]:
        """Ranking fields currently stored for the given entities."""

    @abstractmethod
    async def write(self, update: RankingUpdate) -> None:
        """Persist one entity's fields atomically, raising on failure."""

    async def record_run(self, record: RunRecord) -> None:
        """Store an audit row for a run. Optional."""

    async def get_display_details(self, entity_ids: List[int]) -> Dict[int, Dict[str, Any]]:
        """Titles used in previews. Optional."""
        return {}


class BatchPersister:
    """Writes updates batch by batch with bounded concurrency."""

    def __init__(self, store: RankingStore,
                 batch_size: Optional[int] = None,
                 pause_seconds: Optional[float] = None,
                 max_concurrency: Optional[int] = None):
        self.store = store
        self.batch_size = batch_size or settings.ranking_batch_size
        self.pause_seconds = settings.ranking_batch_pause_seconds if pause_seconds is None else pause_seconds
        self.max_concurrency = max_concurrency or self.batch_size

    async def _write_one(self, semaphore: asyncio.Semaphore,
                         update: RankingUpdate) -> Tuple[int, Optional[Exception]]:
        async with semaphore:
            try:
                await self.store.write(update)
                return update.entity_id, None
            except Exception as e:
                logger.error(f"Error updating entity {update.entity_id}: {e}")
                return update.entity_id, e

    async def persist(self, updates: List[RankingUpdate]) -> PersistResult:
        """
        Persist all updates.

        Raises:
            StorageUnavailableError: if the first batch wrote nothing and
                every failure in it was a storage outage
        """
        result = PersistResult()
        semaphore = asyncio.Semaphore(self.max_concurrency)
        total = len(updates)

        for start in range(0, total, self.batch_size):
            batch = updates[start:start + self.batch_size]
            outcomes = await asyncio.gather(
                *(self._write_one(semaphore, update) for update in batch)
            )

            batch_errors = [error for _, error in outcomes if error is not None]
            for entity_id, error in outcomes:
                if error is None:
                    result.updated_count += 1
                else:
                    result.error_count += 1
                    result.failed_ids.append(entity_id)

            if start == 0 and batch_errors and len(batch_errors) == len(batch) and all(
                isinstance(error, StorageUnavailableError) for error in batch_errors
            ):
                raise StorageUnavailableError(
                    f"Storage unavailable: first batch of {len(batch)} writes failed"
                )

            progress = min(start + self.batch_size, total)
            logger.info(
                f"Progress: {progress}/{total} written "
                f"({len(batch) - len(batch_errors)} ok, {len(batch_errors)} errors in batch)"
            )

            if progress < total and self.pause_seconds > 0:
                await asyncio.sleep(self.pause_seconds)

        if result.error_count:
            logger.warning(f"{result.error_count} updates failed: ids {result.failed_ids[:20]}")

        return result
