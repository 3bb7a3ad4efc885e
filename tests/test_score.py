"""Tests for popularity scoring."""

import pytest

from catalogrank.ranker.score import (
    catalog_score,
    length_score,
    popularity_tier,
    reaction_balance,
    recency_score,
    review_score,
    score_signals,
)
from catalogrank.ranker.signals import CatalogSignals, ReviewSignals


class TestCatalogScore:
    """Tests for the anime/manga score."""

    def test_linear_blend(self):
        signals = CatalogSignals(
            entity_id=1,
            users_in_collection=3,
            avg_review_score=4.0,
            views=250,
            avg_collection_rating=8.0,
        )
        # 3*10 + 4*5 + 250/100 + 8*2
        assert catalog_score(signals) == pytest.approx(68.5)

    def test_missing_signals_count_as_zero(self):
        assert catalog_score(CatalogSignals(entity_id=1)) == 0.0

    def test_negative_and_non_finite_signals_count_as_zero(self):
        signals = CatalogSignals(
            entity_id=1,
            users_in_collection=-5,
            avg_review_score=float('nan'),
            views=float('inf'),
            avg_collection_rating=2.0,
        )
        assert catalog_score(signals) == pytest.approx(4.0)

    def test_more_collection_users_scores_higher(self):
        low = CatalogSignals(entity_id=1, users_in_collection=1)
        high = CatalogSignals(entity_id=2, users_in_collection=2)
        assert catalog_score(high) > catalog_score(low)


class TestReviewComponents:
    """Tests for the step functions and reaction balance."""

    @pytest.mark.parametrize("length,expected", [
        (0, 0.2),
        (99, 0.2),
        (100, 0.5),
        (299, 0.5),
        (300, 0.7),
        (499, 0.7),
        (500, 1.0),
        (5000, 1.0),
    ])
    def test_length_score(self, length, expected):
        assert length_score(length) == expected

    def test_length_score_never_decreases(self):
        values = [length_score(length) for length in range(0, 2000, 7)]
        assert values == sorted(values)

    @pytest.mark.parametrize("age,expected", [
        (0.0, 1.0),
        (0.99, 1.0),
        (1.0, 0.9),
        (6.9, 0.9),
        (7.0, 0.7),
        (89.0, 0.5),
        (179.0, 0.3),
        (364.0, 0.2),
        (365.0, 0.1),
        (3650.0, 0.1),
    ])
    def test_recency_score(self, age, expected):
        assert recency_score(age) == expected

    def test_recency_score_never_increases(self):
        values = [recency_score(age) for age in range(0, 800, 3)]
        assert values == sorted(values, reverse=True)

    def test_reaction_balance(self):
        assert reaction_balance(0, 0) == 0.0
        assert reaction_balance(4, 0) == pytest.approx(0.10)
        assert reaction_balance(0, 2) == pytest.approx(-0.05)
        assert reaction_balance(1, 1) == pytest.approx(0.025)


class TestReviewScore:
    """Tests for the composite review score."""

    def test_fresh_empty_review(self):
        # Only length (0.2 * 0.05) and recency (1.0 * 0.08) contribute
        assert review_score(ReviewSignals(entity_id=1)) == pytest.approx(0.9)

    def test_floored_at_zero(self):
        signals = ReviewSignals(entity_id=1, negative_reactions=100, age_days=3650.0)
        assert review_score(signals) == 0.0

    def test_growth_is_capped(self):
        capped = ReviewSignals(entity_id=1, growth_ratio=2.0)
        excessive = ReviewSignals(entity_id=1, growth_ratio=50.0)
        assert review_score(excessive) == review_score(capped)

    def test_rating_is_capped(self):
        capped = ReviewSignals(entity_id=1, avg_rating=10.0)
        excessive = ReviewSignals(entity_id=1, avg_rating=15.0)
        assert review_score(excessive) == review_score(capped)

    def test_more_views_scores_higher(self):
        scores = [
            review_score(ReviewSignals(entity_id=1, total_views=views, age_days=10.0))
            for views in (10, 50, 100, 200)
        ]
        assert scores == sorted(scores)
        assert len(set(scores)) == 4

    def test_deterministic(self):
        signals = ReviewSignals(
            entity_id=7,
            total_views=1234,
            recent_views=80,
            growth_ratio=1.3,
            avg_rating=7.5,
            rating_count=12,
            positive_reactions=9,
            negative_reactions=3,
            review_length=820,
            age_days=42.0,
        )
        assert review_score(signals) == review_score(signals)


class TestDispatch:
    """Tests for score_signals and tiers."""

    def test_dispatches_by_signal_type(self):
        catalog = CatalogSignals(entity_id=1, users_in_collection=1)
        review = ReviewSignals(entity_id=1)
        assert score_signals(catalog) == catalog_score(catalog)
        assert score_signals(review) == review_score(review)

    def test_unknown_signal_type(self):
        with pytest.raises(TypeError):
            score_signals(object())

    @pytest.mark.parametrize("score,tier", [
        (9.5, 'Viral'),
        (8.0, 'Viral'),
        (7.0, 'Very popular'),
        (5.0, 'Popular'),
        (4.0, 'Well liked'),
        (2.0, 'Rising'),
        (1.9, 'New'),
        (0.0, 'New'),
    ])
    def test_popularity_tier(self, score, tier):
        assert popularity_tier(score) == tier
