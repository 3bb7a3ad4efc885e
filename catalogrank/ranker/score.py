"""Popularity scoring.

Turns a signal vector into one scalar score:
- Catalog entries (anime/manga): linear blend of collection reach, review
  score, views and collection rating
- Reviews: weighted composite of views, momentum, ratings, reactions,
  length and recency, log-normalized so realistic counters stay bounded

Scoring is pure: no I/O, no clock, no randomness. Missing or malformed
inputs count as zero.
"""

import math
from typing import Any

from catalogrank.ranker.signals import CatalogSignals, ReviewSignals, Signals

# Catalog weights
USERS_IN_COLLECTION_WEIGHT = 10.0
AVG_REVIEW_SCORE_WEIGHT = 5.0
VIEWS_DIVISOR = 100.0
AVG_COLLECTION_RATING_WEIGHT = 2.0

# Review weights
TOTAL_VIEWS_WEIGHT = 0.25
RECENT_VIEWS_WEIGHT = 0.20
GROWTH_WEIGHT = 0.10
AVG_RATING_WEIGHT = 0.15
RATING_COUNT_WEIGHT = 0.05
POSITIVE_REACTIONS_WEIGHT = 0.10
NEGATIVE_REACTIONS_WEIGHT = -0.05
LENGTH_WEIGHT = 0.05
RECENCY_WEIGHT = 0.08

GROWTH_CAP = 2.0
MAX_RATING = 10.0
REVIEW_SCALE = 10.0

# (upper bound exclusive, score)
LENGTH_STEPS = ((100, 0.2), (300, 0.5), (500, 0.7))
RECENCY_STEPS = ((1, 1.0), (7, 0.9), (30, 0.7), (90, 0.5), (180, 0.3), (365, 0.2))

# (minimum score, label)
POPULARITY_TIERS = (
    (8.0, 'Viral'),
    (6.5, 'Very popular'),
    (5.0, 'Popular'),
    (3.5, 'Well liked'),
    (2.0, 'Rising'),
)


def _signal(value: Any) -> float:
    """Coerce a raw signal to a finite non-negative float."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def catalog_score(signals: CatalogSignals) -> float:
    """
    usersInCollection*10 + avgReviewScore*5 + views/100 + avgCollectionRating*2
    """
    return (
        _signal(signals.users_in_collection) * USERS_IN_COLLECTION_WEIGHT
        + _signal(signals.avg_review_score) * AVG_REVIEW_SCORE_WEIGHT
        + _signal(signals.views) / VIEWS_DIVISOR
        + _signal(signals.avg_collection_rating) * AVG_COLLECTION_RATING_WEIGHT
    )


def length_score(length: float) -> float:
    """Reward substantial reviews; saturates at 500 characters."""
    for upper, value in LENGTH_STEPS:
        if length < upper:
            return value
    return 1.0


def recency_score(age_days: float) -> float:
    """Step decay with age in days."""
    for upper, value in RECENCY_STEPS:
        if age_days < upper:
            return value
    return 0.1


def reaction_balance(positive: float, negative: float) -> float:
    """Weighted share of positive vs negative reactions; 0 with no votes."""
    votes = positive + negative
    if votes <= 0:
        return 0.0
    return (positive * POSITIVE_REACTIONS_WEIGHT + negative * NEGATIVE_REACTIONS_WEIGHT) / votes


def review_score(signals: ReviewSignals) -> float:
    """Composite review popularity, floored at 0."""
    views = _signal(signals.total_views)
    recent = _signal(signals.recent_views)
    growth = min(_signal(signals.growth_ratio), GROWTH_CAP)
    rating = min(_signal(signals.avg_rating), MAX_RATING)
    rating_count = _signal(signals.rating_count)
    positive = _signal(signals.positive_reactions)
    negative = _signal(signals.negative_reactions)
    length = _signal(signals.review_length)
    age = _signal(signals.age_days)

    composite = (
        math.log(views + 1) / 10 * TOTAL_VIEWS_WEIGHT
        + math.log(recent + 1) / 8 * RECENT_VIEWS_WEIGHT
        + growth * GROWTH_WEIGHT
        + rating / MAX_RATING * AVG_RATING_WEIGHT
        + math.log(rating_count + 1) / 5 * RATING_COUNT_WEIGHT
        + reaction_balance(positive, negative)
        + length_score(length) * LENGTH_WEIGHT
        + recency_score(age) * RECENCY_WEIGHT
    )
    return max(0.0, composite * REVIEW_SCALE)


def score_signals(signals: Signals) -> float:
    """Score any signal vector."""
    if isinstance(signals, ReviewSignals):
        return review_score(signals)
    if isinstance(signals, CatalogSignals):
        return catalog_score(signals)
    raise TypeError(f"Unsupported signal type: {type(signals).__name__}")


def popularity_tier(score: float) -> str:
    """Display tier for a review score."""
    for minimum, label in POPULARITY_TIERS:
        if score >= minimum:
            return label
    return 'New'
