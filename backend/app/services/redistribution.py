"""
Redistribution Engine
─────────────────────
Recomputes every score in a tier from its desired order. Used after a
comparison session resolves (insertion), after a book leaves the tier
(removal), after a manual reorder, and to heal drift found at read time.

The whole tier is always recomputed, never just the shifted tail: that
keeps spacing even and rewrites any drifted value instead of trusting it.
Planning is pure; apply_plan() hands the batch to the store, which writes
it all-or-nothing.
"""
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from uuid import UUID

from app.db.models import Rating
from app.services.ranking_store import RankingStore, ScoreUpdate, TierMember
from app.services.score_model import (
    check_tier_invariants,
    is_ceiling,
    scores_for_tier,
    tier_capacity,
)

logger = logging.getLogger(__name__)


class TierCapacityError(Exception):
    """Raised when a tier has no room left for evenly spaced scores."""


def ensure_room(rating: Rating, size: int) -> None:
    """Raise TierCapacityError if a tier of *size* books cannot be scored."""
    capacity = tier_capacity(rating)
    if size > capacity:
        raise TierCapacityError(
            f"Your {rating.value} shelf is full ({capacity} books); "
            "move a book to another rating first"
        )


@dataclass(frozen=True)
class TierPlan:
    """Desired order of a tier (best first) and the scores it implies."""

    rating: Rating
    ordered_ids: tuple[UUID, ...]
    updates: tuple[ScoreUpdate, ...] = field(default=())

    def score_of(self, user_book_id: UUID) -> float:
        for item in self.updates:
            if item.user_book_id == user_book_id:
                return item.rank_score
        raise KeyError(user_book_id)

    def rank_of(self, user_book_id: UUID) -> int:
        return self.ordered_ids.index(user_book_id) + 1


def _member_ids(members: Sequence[TierMember | UUID]) -> list[UUID]:
    return [m.id if isinstance(m, TierMember) else m for m in members]


def plan_redistribution(rating: Rating, ordered: Sequence[TierMember | UUID]) -> TierPlan:
    """Score *ordered* (best first) with the even-spacing formula."""
    ids = _member_ids(ordered)
    if len(set(ids)) != len(ids):
        raise ValueError("tier order contains duplicate ids")
    ensure_room(rating, len(ids))
    scores = scores_for_tier(len(ids), rating)
    updates = tuple(ScoreUpdate(user_book_id=i, rank_score=s) for i, s in zip(ids, scores))
    return TierPlan(rating=rating, ordered_ids=tuple(ids), updates=updates)


def plan_insertion(
    rating: Rating,
    members: Sequence[TierMember | UUID],
    candidate_id: UUID,
    rank: int,
) -> TierPlan:
    """
    Splice *candidate_id* in at 1-indexed *rank* and rescore the tier.

    The candidate is dropped from *members* first if it is already there,
    so re-ranking a book inside its own tier moves it rather than cloning it.
    """
    ids = [i for i in _member_ids(members) if i != candidate_id]
    if not 1 <= rank <= len(ids) + 1:
        raise ValueError(f"rank {rank} is outside [1, {len(ids) + 1}]")
    ids.insert(rank - 1, candidate_id)
    return plan_redistribution(rating, ids)


def plan_removal(
    rating: Rating,
    members: Sequence[TierMember | UUID],
    removed_id: UUID,
) -> TierPlan:
    """Drop *removed_id* (if present) and rescore what remains."""
    ids = [i for i in _member_ids(members) if i != removed_id]
    return plan_redistribution(rating, ids)


def removal_moves_ceiling(rating: Rating, removed_score: float | None) -> bool:
    """True when the removed book held the tier's top score."""
    return is_ceiling(removed_score, rating)


def tier_violations(rating: Rating, members: Sequence[TierMember]) -> list[str]:
    return check_tier_invariants(rating, [m.rank_score for m in members])


def apply_plan(store: RankingStore, user_id: UUID, plan: TierPlan) -> None:
    store.persist_scores(user_id, plan.rating, plan.updates)
    logger.info(
        "Redistributed %s tier for user=%s (%d book(s))",
        plan.rating.value,
        user_id,
        len(plan.updates),
    )
