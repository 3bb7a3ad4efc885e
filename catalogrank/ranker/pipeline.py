"""Ranking job orchestrator.

One run recomputes popularity for a single entity class:
1. Reading signals: exhaustive read of eligible entities
2. Scoring: pure score per signal vector
3. Ranking: dense ranks with a deterministic tie-break
4. Variation: compare with the rank stored by the previous run
5. History (reviews only): fold today's rank into the bounded trail
6. Persisting: batched, failure-isolated writes

Runs for different entity classes are independent. Two runs of the same class
must not overlap; inside one process a per-class lock rejects the second.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from catalogrank.core.cache import RankingsCache
from catalogrank.core.db import AsyncSessionLocal
from catalogrank.core.logging import get_logger
from catalogrank.core.repositories import (
    get_review_job_stats,
    get_last_completed_run,
    reset_review_view_counters,
)
from catalogrank.core.settings import settings
from catalogrank.core.time import today_in_timezone, utc_now
from catalogrank.ranker.errors import RankingJobError, RunInProgressError
from catalogrank.ranker.history import (
    compact_history,
    parse_history,
    serialize_history,
    trail_variation,
)
from catalogrank.ranker.persist import (
    BatchPersister,
    PersistResult,
    RankingStore,
    RankingUpdate,
    RunRecord,
)
from catalogrank.ranker.rank import (
    RankedEntity,
    ScoredEntity,
    apply_variations,
    assign_ranks,
)
from catalogrank.ranker.score import popularity_tier, score_signals
from catalogrank.ranker.signals import (
    CatalogSignalReader,
    EntityClass,
    ReviewSignalReader,
    SignalReader,
)
from catalogrank.ranker.store import SqlRankingStore

logger = get_logger(__name__)

_run_locks: Dict[EntityClass, asyncio.Lock] = {}


def _run_lock(entity_class: EntityClass) -> asyncio.Lock:
    lock = _run_locks.get(entity_class)
    if lock is None:
        lock = _run_locks[entity_class] = asyncio.Lock()
    return lock


class RunState(str, Enum):
    """Lifecycle of one ranking run."""
    IDLE = 'idle'
    READING_SIGNALS = 'reading_signals'
    SCORING = 'scoring'
    RANKING = 'ranking'
    COMPUTING_VARIATION = 'computing_variation'
    COMPACTING_HISTORY = 'compacting_history'
    PERSISTING = 'persisting'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class RunStats:
    """Counts for one run."""
    total: int = 0
    updated: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        """Convert to dictionary."""
        return {'total': self.total, 'updated': self.updated, 'errors': self.errors}


@dataclass
class RunReport:
    """Summary of a completed ranking run."""
    entity_class: EntityClass
    success: bool
    message: str
    state: RunState
    stats: RunStats
    top: List[Dict[str, Any]]
    started_at: datetime
    completed_at: datetime
    runtime_seconds: float
    stage_timings: Dict[str, float] = field(default_factory=dict)
    failed_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'success': self.success,
            'message': self.message,
            'entity_class': self.entity_class.value,
            'state': self.state.value,
            'stats': self.stats.to_dict(),
            'top10': self.top,
            'failed_ids': self.failed_ids,
            'stage_timings': self.stage_timings,
            'runtime_seconds': round(self.runtime_seconds, 3),
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat(),
        }


class StageTimer:
    """Context manager for timing pipeline stages."""

    def __init__(self, stage_name: str, timings_dict: Dict[str, float]):
        self.stage_name = stage_name
        self.timings_dict = timings_dict
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            runtime = time.time() - self.start_time
            self.timings_dict[self.stage_name] = runtime


class RankingPipeline:
    """Recomputes score, rank and variation for one entity class."""

    def __init__(self, entity_class: EntityClass,
                 reader: SignalReader,
                 store: RankingStore,
                 persister: Optional[BatchPersister] = None,
                 top_k: Optional[int] = None,
                 today: Optional[date] = None,
                 history_capacity: Optional[int] = None,
                 cache: Optional[RankingsCache] = None):
        self.entity_class = EntityClass(entity_class)
        self.reader = reader
        self.store = store
        self.persister = persister or BatchPersister(store)
        self.top_k = top_k or settings.ranking_top_k
        self.today = today
        self.history_capacity = history_capacity or settings.ranking_history_capacity
        self.cache = cache
        self.state = RunState.IDLE
        self.stage_timings: Dict[str, float] = {}

    def _time_stage(self, stage_name: str):
        return StageTimer(stage_name, self.stage_timings)

    def _transition(self, state: RunState) -> None:
        logger.debug(f"{self.entity_class.value} run: {self.state.value} -> {state.value}")
        self.state = state

    async def run(self) -> RunReport:
        """
        Execute one run.

        Raises:
            RunInProgressError: a run for this class is already executing
            RankingJobError: the run failed as a whole
        """
        lock = _run_lock(self.entity_class)
        if lock.locked():
            raise RunInProgressError(self.entity_class.value)

        async with lock:
            return await self._run()

    async def _run(self) -> RunReport:
        started_at = utc_now()
        start_time = time.time()
        today = self.today or today_in_timezone(settings.tz, started_at)
        self.stage_timings = {}
        self.state = RunState.IDLE
        label = self.entity_class.value

        logger.info(f"Starting {label} popularity run")

        try:
            self._transition(RunState.READING_SIGNALS)
            with self._time_stage("reading_signals"):
                signals = await self.reader.read_signals()

            if not signals:
                logger.warning(f"No {label} entities to rank")
                self._transition(RunState.DONE)
                report = self._report(
                    f"No {label} entities to rank", RunStats(), [], started_at, start_time
                )
                await self._record(report)
                return report

            self._transition(RunState.SCORING)
            with self._time_stage("scoring"):
                scored = [
                    ScoredEntity(
                        entity_id=signal.entity_id,
                        score=score_signals(signal),
                        tie_break_count=getattr(signal, 'rating_count', 0),
                    )
                    for signal in signals
                ]

            self._transition(RunState.RANKING)
            with self._time_stage("ranking"):
                ranked = assign_ranks(scored, count_tiebreak=self.entity_class.is_catalog)

            self._transition(RunState.COMPUTING_VARIATION)
            with self._time_stage("computing_variation"):
                prior = await self.store.load_prior([entity.entity_id for entity in ranked])
                apply_variations(ranked, {entity_id: state.rank for entity_id, state in prior.items()})

            if self.entity_class == EntityClass.REVIEW:
                self._transition(RunState.COMPACTING_HISTORY)
                with self._time_stage("compacting_history"):
                    updates = self._history_updates(ranked, prior, today)
            else:
                updates = [
                    RankingUpdate(entity.entity_id, entity.score, entity.rank, entity.variation)
                    for entity in ranked
                ]

            self._transition(RunState.PERSISTING)
            with self._time_stage("persisting"):
                await self.store.ping()
                persisted = await self.persister.persist(updates)

        except Exception as e:
            failed_stage = self.state
            self._transition(RunState.FAILED)
            runtime = time.time() - start_time
            logger.error(
                f"Fatal error in {label} popularity run during {failed_stage.value} "
                f"after {runtime:.2f}s: {e}"
            )
            await self._record_failure(failed_stage, e, started_at)
            raise RankingJobError(label, failed_stage.value, str(e)) from e

        self._transition(RunState.DONE)
        top = await self._top_preview(ranked)
        stats = RunStats(
            total=len(ranked),
            updated=persisted.updated_count,
            errors=persisted.error_count,
        )
        message = f"Updated {stats.updated} {label} rankings"
        if stats.errors:
            message += f" ({stats.errors} errors)"

        report = self._report(message, stats, top, started_at, start_time, persisted)
        logger.info(
            f"{label.capitalize()} popularity run completed in {report.runtime_seconds:.2f}s - "
            f"Updated: {stats.updated}, Errors: {stats.errors}"
        )

        await self._record(report)
        await self._invalidate_cache()
        return report

    def _history_updates(self, ranked: List[RankedEntity], prior: Dict[int, Any],
                         today: date) -> List[RankingUpdate]:
        updates = []
        for entity in ranked:
            state = prior.get(entity.entity_id)
            history = parse_history(state.variation if state else None)
            trail = compact_history(history, today, entity.rank, self.history_capacity)
            updates.append(
                RankingUpdate(entity.entity_id, entity.score, entity.rank, serialize_history(trail))
            )
        return updates

    async def _top_preview(self, ranked: List[RankedEntity]) -> List[Dict[str, Any]]:
        leaders = ranked[:self.top_k]
        try:
            details = await self.store.get_display_details([entity.entity_id for entity in leaders])
        except Exception as e:
            logger.warning(f"Could not load titles for {self.entity_class.value} preview: {e}")
            details = {}

        preview = []
        for entity in leaders:
            entry = entity.to_dict()
            entry.update(details.get(entity.entity_id, {}))
            if self.entity_class == EntityClass.REVIEW:
                entry['tier'] = popularity_tier(entity.score)
            preview.append(entry)
        return preview

    def _report(self, message: str, stats: RunStats, top: List[Dict[str, Any]],
                started_at: datetime, start_time: float,
                persisted: Optional[PersistResult] = None) -> RunReport:
        return RunReport(
            entity_class=self.entity_class,
            success=True,
            message=message,
            state=self.state,
            stats=stats,
            top=top,
            started_at=started_at,
            completed_at=utc_now(),
            runtime_seconds=time.time() - start_time,
            stage_timings=dict(self.stage_timings),
            failed_ids=list(persisted.failed_ids) if persisted else [],
        )

    async def _record(self, report: RunReport) -> None:
        record = RunRecord(
            entity_class=self.entity_class.value,
            state=report.state.value,
            stats=report.stats.to_dict(),
            error_message=None,
            started_at=report.started_at,
            completed_at=report.completed_at,
        )
        try:
            await self.store.record_run(record)
        except Exception as e:
            logger.warning(f"Could not record {self.entity_class.value} run: {e}")

    async def _record_failure(self, stage: RunState, error: Exception, started_at: datetime) -> None:
        record = RunRecord(
            entity_class=self.entity_class.value,
            state=RunState.FAILED.value,
            stats=None,
            error_message=f"{stage.value}: {error}",
            started_at=started_at,
            completed_at=utc_now(),
        )
        try:
            await self.store.record_run(record)
        except Exception as e:
            logger.warning(f"Could not record failed {self.entity_class.value} run: {e}")

    async def _invalidate_cache(self) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.invalidate(self.entity_class.value)
            await self.cache.close()
        except Exception as e:
            # Rankings are already persisted; a stale cache is not a failed run
            logger.warning(f"Could not invalidate {self.entity_class.value} rankings cache: {e}")


def build_pipeline(entity_class: EntityClass, **kwargs) -> RankingPipeline:
    """Pipeline wired to the database and the rankings cache."""
    entity_class = EntityClass(entity_class)
    if entity_class == EntityClass.REVIEW:
        reader = ReviewSignalReader()
    else:
        reader = CatalogSignalReader(entity_class)
    store = SqlRankingStore(entity_class)
    kwargs.setdefault('cache', RankingsCache())
    return RankingPipeline(entity_class, reader, store, **kwargs)


async def recompute_popularity(entity_class: EntityClass) -> Dict[str, Any]:
    """Run one entity class and return its report as a dict."""
    report = await build_pipeline(entity_class).run()
    return report.to_dict()


async def recompute_anime_popularity() -> Dict[str, Any]:
    """Recompute anime popularity ranks."""
    return await recompute_popularity(EntityClass.ANIME)


async def recompute_manga_popularity() -> Dict[str, Any]:
    """Recompute manga popularity ranks."""
    return await recompute_popularity(EntityClass.MANGA)


async def recompute_review_rankings() -> Dict[str, Any]:
    """Recompute review popularity ranks and rank history."""
    return await recompute_popularity(EntityClass.REVIEW)


def _with_trail_change(row: Dict[str, Any]) -> Dict[str, Any]:
    """Replace the stored history blob with its display variation."""
    entry = dict(row)
    entry['change'] = trail_variation(parse_history(entry.pop('variation', None)))
    return entry


async def get_job_stats() -> Dict[str, Any]:
    """Coverage statistics for review rankings."""
    async with AsyncSessionLocal() as session:
        stats = await get_review_job_stats(session, top_k=settings.ranking_top_k)
        last_run = await get_last_completed_run(session, EntityClass.REVIEW.value)

    total = stats['total']
    with_score = stats['with_score']
    return {
        'total_reviews': total,
        'reviews_with_score': with_score,
        'coverage_percent': round(with_score / total * 100, 2) if total > 0 else 0.0,
        'average_score': round(stats['average_score'], 4),
        'top10': [_with_trail_change(row) for row in stats['top']],
        'last_updated': last_run.completed_at.isoformat() if last_run and last_run.completed_at else None,
    }


async def reset_view_counters(window: str) -> Dict[str, Any]:
    """Zero the daily, weekly or monthly review view counters."""
    async with AsyncSessionLocal() as session:
        rows = await reset_review_view_counters(session, window)
    return {'success': True, 'window': window, 'rows': rows}
