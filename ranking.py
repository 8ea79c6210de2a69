"""
Ranking engine

Completed attempts are ordered by score (high first) then time spent (low
first). Attempts with the same (score, time) share a rank and the following
rank skips by the size of the tie, e.g. 1, 1, 3, 4.
"""

import logging
from typing import Any, Dict, List, Sequence, Tuple

from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

logger = logging.getLogger(__name__)


def rank_key(score: float, time_spent: int) -> Tuple[float, int]:
    return (-(score or 0), time_spent or 0)


def competition_ranks(entries: Sequence[Tuple[float, int]]) -> List[int]:
    """Ranks for ``(score, time_spent)`` pairs, returned in input order."""
    order = sorted(range(len(entries)), key=lambda i: rank_key(*entries[i]))
    ranks = [0] * len(entries)
    current_rank = 1
    previous = None
    for position, index in enumerate(order):
        key = rank_key(*entries[index])
        if previous is not None and key != previous:
            current_rank = position + 1
        ranks[index] = current_rank
        previous = key
    return ranks


def recalculate_rankings(db: Database, test_id: str) -> List[Dict[str, Any]]:
    """Rewrite rank and total_attempts on every completed attempt of a test.

    This is a full recompute; running it twice, or concurrently from two
    submissions, converges on the same result.
    """
    attempts = list(
        db["attempt"]
        .find(
            {"test_id": test_id, "is_completed": True},
            {"score": 1, "time_spent": 1},
        )
        .sort([("score", DESCENDING), ("time_spent", ASCENDING)])
    )
    if not attempts:
        return []

    ranks = competition_ranks([(a.get("score"), a.get("time_spent")) for a in attempts])
    total = len(attempts)
    for attempt, rank in zip(attempts, ranks):
        attempt["rank"] = rank
        attempt["total_attempts"] = total
        db["attempt"].update_one({"_id": attempt["_id"]}, {"$set": {"rank": rank, "total_attempts": total}})
    logger.info("Recalculated rankings for test %s over %d attempts", test_id, total)
    return attempts
