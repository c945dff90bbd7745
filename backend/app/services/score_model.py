"""
Score Model
───────────
Tier bands and the even-spacing formula that turns an ordinal rank inside a
tier into a rank_score.

    rating     ceiling   band
    liked       10.0     (6.5, 10.0]
    fine         6.5     (3.5,  6.5]
    disliked     3.5     [0.0,  3.5]

For a tier of N books the book at 1-indexed rank k scores

    ceiling - (k - 1) * (ceiling - floor) / N

so rank 1 always sits exactly on the ceiling and the lowest book keeps one
step of headroom above the floor.

Scores are stored with 6 decimal places, well below EPSILON, so a tier holds
about (ceiling - floor) / EPSILON books before neighbours collapse; see
tier_capacity(). Every float equality test goes through approx_equal() with
EPSILON, never through ==.
"""
from collections.abc import Sequence
from dataclasses import dataclass

from app.db.models import Rating

EPSILON = 0.001
SCORE_DECIMALS = 6
MIN_SCORE = 0.0
MAX_SCORE = 10.0


# ── Tier bands ────────────────────────────────────────────────────────────────
# Must match chk_rank_score_by_rating in the user_books DDL.

@dataclass(frozen=True)
class TierBand:
    ceiling: float
    floor: float
    floor_inclusive: bool

    @property
    def width(self) -> float:
        return self.ceiling - self.floor

    def contains(self, score: float) -> bool:
        if score > self.ceiling and not approx_equal(score, self.ceiling):
            return False
        if self.floor_inclusive:
            return score >= self.floor or approx_equal(score, self.floor)
        return score > self.floor and not approx_equal(score, self.floor)


TIER_BANDS: dict[Rating, TierBand] = {
    Rating.liked: TierBand(ceiling=MAX_SCORE, floor=6.5, floor_inclusive=False),
    Rating.fine: TierBand(ceiling=6.5, floor=3.5, floor_inclusive=False),
    Rating.disliked: TierBand(ceiling=3.5, floor=MIN_SCORE, floor_inclusive=True),
}

# Best tier first.
TIER_ORDER: tuple[Rating, ...] = (Rating.liked, Rating.fine, Rating.disliked)


def approx_equal(a: float, b: float, tolerance: float = EPSILON) -> bool:
    """True when *a* and *b* differ by less than *tolerance*."""
    return abs(a - b) < tolerance


def round_score(score: float) -> float:
    return round(score, SCORE_DECIMALS)


def tier_band(rating: Rating | str) -> TierBand:
    return TIER_BANDS[Rating(rating)]


def tier_ceiling(rating: Rating | str) -> float:
    return tier_band(rating).ceiling


def band_contains(score: float, rating: Rating | str) -> bool:
    return tier_band(rating).contains(score)


def is_ceiling(score: float | None, rating: Rating | str) -> bool:
    """True when *score* sits on its tier's ceiling (within EPSILON)."""
    if score is None:
        return False
    return approx_equal(score, tier_ceiling(rating))


def score_for_rank(k: int, n: int, rating: Rating | str) -> float:
    """
    Score for the book at 1-indexed rank *k* in a tier of *n* books.

    Raises:
        ValueError: If n < 1 or k is outside [1, n].
    """
    if n < 1:
        raise ValueError(f"tier size must be >= 1, got {n}")
    if not 1 <= k <= n:
        raise ValueError(f"rank {k} is outside [1, {n}]")
    band = tier_band(rating)
    raw = band.ceiling - (k - 1) * band.width / n
    return round_score(raw)


def tier_capacity(rating: Rating | str) -> int:
    """
    Largest tier size whose even spacing stays more than EPSILON apart
    after rounding both neighbours.
    """
    slack = 2 * 10 ** -SCORE_DECIMALS
    return int(tier_band(rating).width / (EPSILON + slack))


def scores_for_tier(n: int, rating: Rating | str) -> list[float]:
    """Scores for ranks 1..n, best first. Empty tier -> []."""
    return [score_for_rank(k, n, rating) for k in range(1, n + 1)]


def check_tier_invariants(
    rating: Rating | str,
    scores: Sequence[float],
) -> list[str]:
    """
    Validate a tier's scores, given best first.

    Returns a list of violation messages; an empty list means the tier is
    sound (ceiling held, strictly descending, every score inside the band).
    """
    band = tier_band(rating)
    tier = Rating(rating).value
    problems: list[str] = []
    if not scores:
        return problems

    if not approx_equal(max(scores), band.ceiling):
        problems.append(
            f"{tier}: top score {max(scores)} is not the ceiling {band.ceiling}"
        )
    for position, score in enumerate(scores, start=1):
        if not band.contains(score):
            problems.append(f"{tier}: rank {position} score {score} is outside the band")
    for position, (upper, lower) in enumerate(zip(scores, scores[1:]), start=1):
        if upper < lower or approx_equal(upper, lower):
            problems.append(
                f"{tier}: ranks {position} and {position + 1} are not strictly "
                f"descending ({upper} vs {lower})"
            )
    return problems
