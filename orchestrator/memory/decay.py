"""
Importance decay and retrieval ranking.

    importance' = importance * exp(-decay_rate * elapsed_days)
    recency     = exp(-0.01 * days_since_creation)
    score       = 0.5 * similarity + 0.3 * importance + 0.2 * recency
"""

import math
from datetime import datetime, timedelta

SIMILARITY_WEIGHT = 0.5
IMPORTANCE_WEIGHT = 0.3
RECENCY_WEIGHT = 0.2
RECENCY_RATE = 0.01

SECONDS_PER_DAY = 86400.0


def elapsed_days(elapsed: timedelta | float) -> float:
    """Accept a timedelta or a number of days."""
    if isinstance(elapsed, timedelta):
        return max(elapsed.total_seconds() / SECONDS_PER_DAY, 0.0)
    return max(float(elapsed), 0.0)


def decayed_importance(importance: float, decay_rate: float, elapsed: timedelta | float) -> float:
    """Exponentially decayed importance, clamped to [0, 1]."""
    value = importance * math.exp(-decay_rate * elapsed_days(elapsed))
    return min(max(value, 0.0), 1.0)


def recency_score(created_at: datetime, now: datetime) -> float:
    return math.exp(-RECENCY_RATE * elapsed_days(now - created_at))


def rank_score(similarity: float, importance: float, recency: float) -> float:
    return SIMILARITY_WEIGHT * similarity + IMPORTANCE_WEIGHT * importance + RECENCY_WEIGHT * recency
