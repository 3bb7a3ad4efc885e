"""Tests for the ranking job orchestrator using in-memory readers and stores."""

import asyncio
from datetime import date, datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from catalogrank.ranker import pipeline as pipeline_module
from catalogrank.ranker.errors import (
    EntityNotFoundError,
    RankingJobError,
    RunInProgressError,
    StorageUnavailableError,
)
from catalogrank.ranker.history import DayRankMap, parse_history, trail_variation
from catalogrank.ranker.persist import BatchPersister, PriorState, RankingStore, RankingUpdate, RunRecord
from catalogrank.ranker.pipeline import RankingPipeline, RunState
from catalogrank.ranker.signals import CatalogSignals, EntityClass, ReviewSignals, SignalReader

DAY_ONE = date(2026, 1, 10)
DAY_TWO = date(2026, 1, 11)


class FakeReader(SignalReader):
    """Returns a fixed list of signals."""

    def __init__(self, entity_class: EntityClass, signals: List[Any], error: Optional[Exception] = None):
        self.entity_class = entity_class
        self.signals = signals
        self.error = error
        self.started = asyncio.Event()
        self.release: Optional[asyncio.Event] = None

    async def read_signals(self) -> List[Any]:
        self.started.set()
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        return list(self.signals)


class MemoryStore(RankingStore):
    """Keeps ranking fields in a dict, like the entity table would."""

    def __init__(self, missing_ids=(), down: bool = False):
        self.rows: Dict[int, PriorState] = {}
        self.scores: Dict[int, float] = {}
        self.missing_ids = set(missing_ids)
        self.down = down
        self.runs: List[RunRecord] = []

    async def ping(self) -> None:
        if self.down:
            raise StorageUnavailableError("Database unreachable")

    async def load_prior(self, entity_ids: List[int]) -> Dict[int, PriorState]:
        return {entity_id: self.rows[entity_id] for entity_id in entity_ids if entity_id in self.rows}

    async def write(self, update: RankingUpdate) -> None:
        if update.entity_id in self.missing_ids:
            raise EntityNotFoundError('review', update.entity_id)
        self.rows[update.entity_id] = PriorState(rank=update.rank, variation=update.variation)
        self.scores[update.entity_id] = update.score

    async def record_run(self, record: RunRecord) -> None:
        self.runs.append(record)

    async def get_display_details(self, entity_ids: List[int]) -> Dict[int, Dict[str, Any]]:
        return {entity_id: {'title': f"Title {entity_id}"} for entity_id in entity_ids}


@pytest.fixture(autouse=True)
def clear_run_locks():
    pipeline_module._run_locks.clear()
    yield
    pipeline_module._run_locks.clear()


def review(entity_id: int, views: int) -> ReviewSignals:
    return ReviewSignals(entity_id=entity_id, total_views=views, review_length=400, age_days=10.0)


def make_pipeline(entity_class: EntityClass, signals: List[Any], store: MemoryStore,
                  today: date = DAY_ONE, **kwargs) -> RankingPipeline:
    reader = kwargs.pop('reader', None) or FakeReader(entity_class, signals)
    persister = BatchPersister(store, batch_size=100, pause_seconds=0)
    return RankingPipeline(entity_class, reader, store, persister=persister, today=today, **kwargs)


class TestReviewRuns:
    """End-to-end runs over reviews."""

    @pytest.mark.asyncio
    async def test_views_drive_rank_and_variation(self):
        store = MemoryStore()
        signals = [review(1, 100), review(2, 50), review(3, 10)]

        first = await make_pipeline(EntityClass.REVIEW, signals, store).run()
        assert first.success is True
        assert first.state == RunState.DONE
        assert {entity_id: state.rank for entity_id, state in store.rows.items()} == {1: 1, 2: 2, 3: 3}
        assert [entry['change'] for entry in first.top] == ['NEW', 'NEW', 'NEW']

        second = await make_pipeline(EntityClass.REVIEW, signals, store).run()
        assert [entry['change'] for entry in second.top] == ['=', '=', '=']

        signals = [review(1, 100), review(2, 50), review(3, 200)]
        third = await make_pipeline(EntityClass.REVIEW, signals, store, today=DAY_TWO).run()

        changes = {entry['id']: (entry['rank'], entry['change']) for entry in third.top}
        assert changes == {3: (1, '+2'), 1: (2, '-1'), 2: (3, '-1')}
        assert third.stats.to_dict() == {'total': 3, 'updated': 3, 'errors': 0}

    @pytest.mark.asyncio
    async def test_history_trail_is_stored_per_day(self):
        store = MemoryStore()
        await make_pipeline(EntityClass.REVIEW, [review(1, 100), review(2, 50)], store).run()
        await make_pipeline(EntityClass.REVIEW, [review(1, 100), review(2, 50)], store).run()

        history = parse_history(store.rows[2].variation)
        assert history == DayRankMap(days=((DAY_ONE, 2),))

        await make_pipeline(EntityClass.REVIEW, [review(1, 10), review(2, 50)], store, today=DAY_TWO).run()

        history = parse_history(store.rows[2].variation)
        assert history.days == ((DAY_ONE, 2), (DAY_TWO, 1))
        assert trail_variation(history) == '+1'

    @pytest.mark.asyncio
    async def test_legacy_variation_is_migrated(self):
        store = MemoryStore()
        store.rows[1] = PriorState(rank=2, variation='{"9-01-2026": 2}')
        store.rows[2] = PriorState(rank=1, variation='NEW')

        await make_pipeline(EntityClass.REVIEW, [review(1, 100), review(2, 50)], store).run()

        assert parse_history(store.rows[1].variation).days == ((date(2026, 1, 9), 2), (DAY_ONE, 1))
        assert parse_history(store.rows[2].variation).days == ((DAY_ONE, 2),)

    @pytest.mark.asyncio
    async def test_preview_has_titles_and_tiers(self):
        store = MemoryStore()
        signals = [review(entity_id, entity_id * 10) for entity_id in range(1, 6)]

        report = await make_pipeline(EntityClass.REVIEW, signals, store, top_k=2).run()

        assert [entry['id'] for entry in report.top] == [5, 4]
        assert report.top[0]['title'] == "Title 5"
        assert 'tier' in report.top[0]


class TestCatalogRuns:
    """Runs over anime and manga."""

    @pytest.mark.asyncio
    async def test_markers_are_stored(self):
        store = MemoryStore()
        signals = [
            CatalogSignals(entity_id=10, users_in_collection=5),
            CatalogSignals(entity_id=11, users_in_collection=9),
        ]

        await make_pipeline(EntityClass.ANIME, signals, store).run()
        assert store.rows[11] == PriorState(rank=1, variation='NEW')
        assert store.rows[10] == PriorState(rank=2, variation='NEW')

        await make_pipeline(EntityClass.ANIME, signals, store).run()
        assert store.rows[11].variation == '='
        assert store.rows[10].variation == '='

    @pytest.mark.asyncio
    async def test_rating_count_breaks_ties(self):
        store = MemoryStore()
        signals = [
            CatalogSignals(entity_id=1, views=100, rating_count=1),
            CatalogSignals(entity_id=2, views=100, rating_count=8),
        ]

        await make_pipeline(EntityClass.MANGA, signals, store).run()

        assert store.rows[2].rank == 1
        assert store.rows[1].rank == 2

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self):
        store = MemoryStore()
        signals = [CatalogSignals(entity_id=entity_id, views=entity_id * 37 % 11) for entity_id in range(1, 30)]

        await make_pipeline(EntityClass.ANIME, signals, store).run()
        first_scores = dict(store.scores)
        first_ranks = {entity_id: state.rank for entity_id, state in store.rows.items()}

        await make_pipeline(EntityClass.ANIME, signals, store).run()

        assert store.scores == first_scores
        assert {entity_id: state.rank for entity_id, state in store.rows.items()} == first_ranks
        assert sorted(first_ranks.values()) == list(range(1, 30))
        assert {state.variation for state in store.rows.values()} == {'='}


class TestRunOutcomes:
    """Partial failures, fatal failures and bookkeeping."""

    @pytest.mark.asyncio
    async def test_partial_failure(self):
        store = MemoryStore(missing_ids={2})

        report = await make_pipeline(EntityClass.REVIEW, [review(1, 100), review(2, 50), review(3, 10)], store).run()

        assert report.success is True
        assert report.stats.to_dict() == {'total': 3, 'updated': 2, 'errors': 1}
        assert report.failed_ids == [2]
        assert sorted(store.rows) == [1, 3]
        assert "1 errors" in report.message

    @pytest.mark.asyncio
    async def test_no_entities(self):
        store = MemoryStore()

        report = await make_pipeline(EntityClass.REVIEW, [], store).run()

        assert report.success is True
        assert report.stats.to_dict() == {'total': 0, 'updated': 0, 'errors': 0}
        assert report.top == []
        assert report.message == "No review entities to rank"

    @pytest.mark.asyncio
    async def test_read_failure_is_fatal(self):
        store = MemoryStore()
        cause = RuntimeError("signal query failed")
        reader = FakeReader(EntityClass.ANIME, [], error=cause)
        run = make_pipeline(EntityClass.ANIME, [], store, reader=reader)

        with pytest.raises(RankingJobError) as excinfo:
            await run.run()

        assert excinfo.value.stage == 'reading_signals'
        assert excinfo.value.__cause__ is cause
        assert run.state == RunState.FAILED
        assert store.runs[-1].state == 'failed'
        assert store.runs[-1].stats is None

    @pytest.mark.asyncio
    async def test_storage_outage_is_fatal(self):
        store = MemoryStore(down=True)

        with pytest.raises(RankingJobError) as excinfo:
            await make_pipeline(EntityClass.REVIEW, [review(1, 100)], store).run()

        assert excinfo.value.stage == 'persisting'
        assert store.rows == {}

    @pytest.mark.asyncio
    async def test_done_run_is_recorded_and_cache_invalidated(self):
        store = MemoryStore()
        cache = AsyncMock()

        report = await make_pipeline(
            EntityClass.MANGA, [CatalogSignals(entity_id=1, views=5)], store, cache=cache
        ).run()

        assert store.runs[-1].state == 'done'
        assert store.runs[-1].stats == {'total': 1, 'updated': 1, 'errors': 0}
        cache.invalidate.assert_awaited_once_with('manga')
        cache.close.assert_awaited_once()
        assert report.to_dict()['entity_class'] == 'manga'

    @pytest.mark.asyncio
    async def test_failed_run_keeps_cache(self):
        store = MemoryStore(down=True)
        cache = AsyncMock()

        with pytest.raises(RankingJobError):
            await make_pipeline(EntityClass.MANGA, [CatalogSignals(entity_id=1)], store, cache=cache).run()

        cache.invalidate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cache_failure_after_persist_is_not_fatal(self):
        store = MemoryStore()
        cache = AsyncMock()
        cache.invalidate.side_effect = ValueError("Redis URL must specify one of the schemes")

        report = await make_pipeline(
            EntityClass.ANIME, [CatalogSignals(entity_id=1, views=5)], store, cache=cache
        ).run()

        assert report.success is True
        assert report.state == RunState.DONE
        assert store.rows[1].rank == 1
        assert store.runs[-1].state == 'done'

    @pytest.mark.asyncio
    async def test_report_dict_shape(self):
        store = MemoryStore()

        report = await make_pipeline(EntityClass.REVIEW, [review(1, 100)], store).run()
        data = report.to_dict()

        assert data['success'] is True
        assert data['state'] == 'done'
        assert data['stats'] == {'total': 1, 'updated': 1, 'errors': 0}
        assert data['top10'][0]['rank'] == 1
        assert set(data['stage_timings']) >= {'reading_signals', 'scoring', 'ranking', 'persisting'}


class TestRunLock:
    """Overlapping runs of the same class."""

    @pytest.mark.asyncio
    async def test_overlapping_run_is_rejected(self):
        store = MemoryStore()
        reader = FakeReader(EntityClass.REVIEW, [review(1, 100)])
        reader.release = asyncio.Event()
        first = make_pipeline(EntityClass.REVIEW, [], store, reader=reader)

        task = asyncio.create_task(first.run())
        await reader.started.wait()

        with pytest.raises(RunInProgressError):
            await make_pipeline(EntityClass.REVIEW, [review(1, 100)], store).run()

        other = await make_pipeline(EntityClass.ANIME, [CatalogSignals(entity_id=1)], MemoryStore()).run()
        assert other.success is True

        reader.release.set()
        report = await task
        assert report.stats.updated == 1


class FakeSession:
    """Stands in for AsyncSessionLocal(); repository calls are patched."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class TestMaintenanceEntrypoints:
    """get_job_stats and reset_view_counters."""

    @pytest.mark.asyncio
    async def test_job_stats(self, monkeypatch):
        monkeypatch.setattr(pipeline_module, "AsyncSessionLocal", FakeSession)
        monkeypatch.setattr(pipeline_module, "get_review_job_stats", AsyncMock(return_value={
            'total': 8,
            'with_score': 6,
            'average_score': 2.345678,
            'top': [
                {'id': 3, 'title': "Akira", 'score': 7.1, 'rank': 1,
                 'variation': '{"v":1,"days":{"2026-01-09":3,"2026-01-10":1}}'},
                {'id': 4, 'title': "Ran", 'score': 6.0, 'rank': 2, 'variation': 'NEW'},
            ],
        }))
        last_run = SimpleNamespace(completed_at=datetime(2026, 1, 10, 3, 0, tzinfo=timezone.utc))
        monkeypatch.setattr(pipeline_module, "get_last_completed_run", AsyncMock(return_value=last_run))

        stats = await pipeline_module.get_job_stats()

        assert stats == {
            'total_reviews': 8,
            'reviews_with_score': 6,
            'coverage_percent': 75.0,
            'average_score': 2.3457,
            'top10': [
                {'id': 3, 'title': "Akira", 'score': 7.1, 'rank': 1, 'change': '+2'},
                {'id': 4, 'title': "Ran", 'score': 6.0, 'rank': 2, 'change': 'NEW'},
            ],
            'last_updated': "2026-01-10T03:00:00+00:00",
        }

    @pytest.mark.asyncio
    async def test_job_stats_without_reviews(self, monkeypatch):
        monkeypatch.setattr(pipeline_module, "AsyncSessionLocal", FakeSession)
        monkeypatch.setattr(pipeline_module, "get_review_job_stats", AsyncMock(return_value={
            'total': 0, 'with_score': 0, 'average_score': 0.0, 'top': [],
        }))
        monkeypatch.setattr(pipeline_module, "get_last_completed_run", AsyncMock(return_value=None))

        stats = await pipeline_module.get_job_stats()

        assert stats['coverage_percent'] == 0.0
        assert stats['last_updated'] is None

    @pytest.mark.asyncio
    async def test_reset_view_counters(self, monkeypatch):
        monkeypatch.setattr(pipeline_module, "AsyncSessionLocal", FakeSession)
        reset = AsyncMock(return_value=5)
        monkeypatch.setattr(pipeline_module, "reset_review_view_counters", reset)

        result = await pipeline_module.reset_view_counters('daily')

        assert result == {'success': True, 'window': 'daily', 'rows': 5}
        assert reset.await_args.args[1] == 'daily'
