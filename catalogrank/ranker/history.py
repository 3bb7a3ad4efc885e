"""Bounded day-keyed rank history for reviews.

The stored value is versioned JSON, ``{"v": 1, "days": {"YYYY-MM-DD": rank}}``.
Older rows hold either a flat ``{"D-MM-YYYY": rank}`` map, which is migrated
by parsing its keys into real dates, or a plain marker such as ``"NEW"`` or
``"+3"``, which carries no trail. Entries are always ordered by date, never by
key text: "9-12-2025" sorts after "10-01-2026" as a string.
"""

import json
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional, Tuple, Union

from catalogrank.core.logging import get_logger
from catalogrank.core.time import format_day_key, parse_day_key
from catalogrank.ranker.rank import compute_variation, VARIATION_NEW

logger = get_logger(__name__)

HISTORY_VERSION = 1
HISTORY_CAPACITY = 30


@dataclass(frozen=True)
class NoHistory:
    """No usable trail."""

    def __len__(self) -> int:
        return 0


@dataclass(frozen=True)
class DayRankMap:
    """Ranks by calendar day, oldest first."""
    days: Tuple[Tuple[date, int], ...]

    def __len__(self) -> int:
        return len(self.days)

    def as_dict(self) -> Dict[date, int]:
        return dict(self.days)

    def latest(self) -> Optional[Tuple[date, int]]:
        return self.days[-1] if self.days else None

    def to_payload(self) -> Dict[str, Any]:
        return {
            'v': HISTORY_VERSION,
            'days': {format_day_key(day): rank for day, rank in self.days},
        }


RankHistory = Union[NoHistory, DayRankMap]


def _from_mapping(mapping: Dict[Any, Any]) -> RankHistory:
    days = {}
    for key, value in mapping.items():
        day = parse_day_key(key)
        if day is None or isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            return NoHistory()
        days[day] = value
    if not days:
        return NoHistory()
    return DayRankMap(days=tuple(sorted(days.items())))


def parse_history(raw: Any) -> RankHistory:
    """
    Read a stored history value, migrating legacy shapes.

    Never raises: anything unrecognized is NoHistory.
    """
    if raw is None or raw == '':
        return NoHistory()

    data = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug(f"Treating legacy variation marker {raw[:16]!r} as no history")
            return NoHistory()

    if not isinstance(data, dict):
        return NoHistory()

    if 'v' in data or 'days' in data:
        if data.get('v') != HISTORY_VERSION or not isinstance(data.get('days'), dict):
            return NoHistory()
        return _from_mapping(data['days'])

    history = _from_mapping(data)
    if isinstance(history, DayRankMap):
        logger.debug(f"Migrated legacy history with {len(history)} entries")
    return history


def compact_history(history: RankHistory, today: date, rank: int,
                    capacity: int = HISTORY_CAPACITY) -> DayRankMap:
    """
    Insert (or overwrite) today's rank and keep the newest `capacity` days.
    """
    days = history.as_dict() if isinstance(history, DayRankMap) else {}
    days[today] = rank
    ordered = sorted(days.items())
    if len(ordered) > capacity:
        ordered = ordered[len(ordered) - capacity:]
    return DayRankMap(days=tuple(ordered))


def serialize_history(history: RankHistory) -> Optional[str]:
    """JSON text for storage; None when there is nothing to store."""
    if not isinstance(history, DayRankMap):
        return None
    return json.dumps(history.to_payload(), separators=(',', ':'))


def trail_variation(history: RankHistory) -> str:
    """Variation marker derived from the two most recent trail entries."""
    if not isinstance(history, DayRankMap) or len(history) < 2:
        return VARIATION_NEW
    (_, previous), (_, current) = history.days[-2], history.days[-1]
    return compute_variation(current, previous)
