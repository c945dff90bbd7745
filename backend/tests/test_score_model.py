import unittest

from app.db.models import Rating
from app.services.score_model import (
    EPSILON,
    TIER_BANDS,
    approx_equal,
    band_contains,
    check_tier_invariants,
    is_ceiling,
    round_score,
    score_for_rank,
    scores_for_tier,
    tier_capacity,
)


class TestScoreForRank(unittest.TestCase):
    def test_rank_one_is_always_the_ceiling(self) -> None:
        for rating, band in TIER_BANDS.items():
            for n in (1, 2, 7, 250):
                self.assertEqual(score_for_rank(1, n, rating), band.ceiling)

    def test_three_liked_books_are_evenly_spaced(self) -> None:
        self.assertEqual(scores_for_tier(3, Rating.liked), [10.0, 8.833333, 7.666667])

    def test_two_liked_books(self) -> None:
        self.assertEqual(scores_for_tier(2, Rating.liked), [10.0, 8.25])

    def test_disliked_lowest_book_keeps_headroom_above_zero(self) -> None:
        scores = scores_for_tier(4, Rating.disliked)
        self.assertEqual(scores, [3.5, 2.625, 1.75, 0.875])
        self.assertGreater(scores[-1], 0.0)

    def test_scores_fit_band_and_strictly_descend(self) -> None:
        for rating in Rating:
            for n in (1, 2, 3, 10, 99, 500):
                scores = scores_for_tier(n, rating)
                self.assertEqual(len(scores), n)
                self.assertEqual(check_tier_invariants(rating, scores), [])

    def test_scores_are_stored_rounded(self) -> None:
        for score in scores_for_tier(7, Rating.fine):
            self.assertEqual(score, round_score(score))

    def test_rejects_out_of_range_rank(self) -> None:
        with self.assertRaises(ValueError):
            score_for_rank(0, 3, Rating.liked)
        with self.assertRaises(ValueError):
            score_for_rank(4, 3, Rating.liked)
        with self.assertRaises(ValueError):
            score_for_rank(1, 0, Rating.liked)

    def test_empty_tier_has_no_scores(self) -> None:
        self.assertEqual(scores_for_tier(0, Rating.fine), [])

    def test_accepts_rating_strings(self) -> None:
        self.assertEqual(score_for_rank(1, 1, "fine"), 6.5)


class TestTolerance(unittest.TestCase):
    def test_approx_equal_absorbs_drift(self) -> None:
        self.assertTrue(approx_equal(10.0, 10.0 - EPSILON / 10))
        self.assertTrue(approx_equal(0.1 + 0.2, 0.3))
        self.assertFalse(approx_equal(10.0, 9.99))

    def test_is_ceiling(self) -> None:
        self.assertTrue(is_ceiling(6.5, Rating.fine))
        self.assertTrue(is_ceiling(6.4999, Rating.fine))
        self.assertFalse(is_ceiling(6.4, Rating.fine))
        self.assertFalse(is_ceiling(None, Rating.fine))

    def test_band_edges(self) -> None:
        self.assertTrue(band_contains(10.0, Rating.liked))
        self.assertFalse(band_contains(6.5, Rating.liked))
        self.assertTrue(band_contains(6.5, Rating.fine))
        self.assertFalse(band_contains(3.5, Rating.fine))
        self.assertTrue(band_contains(0.0, Rating.disliked))
        self.assertTrue(band_contains(3.5, Rating.disliked))
        self.assertFalse(band_contains(3.6, Rating.disliked))


class TestCheckTierInvariants(unittest.TestCase):
    def test_sound_tier(self) -> None:
        self.assertEqual(check_tier_invariants(Rating.liked, [10.0, 8.0, 7.0]), [])

    def test_empty_tier_is_sound(self) -> None:
        self.assertEqual(check_tier_invariants(Rating.liked, []), [])

    def test_missing_ceiling(self) -> None:
        problems = check_tier_invariants(Rating.liked, [9.0, 8.0])
        self.assertEqual(len(problems), 1)
        self.assertIn("ceiling", problems[0])

    def test_near_duplicate_scores(self) -> None:
        problems = check_tier_invariants(Rating.fine, [6.5, 5.0, 5.0004])
        self.assertTrue(any("strictly descending" in p for p in problems))

    def test_out_of_band(self) -> None:
        problems = check_tier_invariants(Rating.fine, [6.5, 3.0])
        self.assertTrue(any("outside the band" in p for p in problems))


class TestTierCapacity(unittest.TestCase):
    def test_capacity_is_band_width_over_epsilon(self) -> None:
        self.assertEqual(tier_capacity(Rating.fine), 2994)
        self.assertEqual(tier_capacity(Rating.liked), 3493)
        self.assertEqual(tier_capacity(Rating.disliked), 3493)

    def test_large_tiers_stay_sound(self) -> None:
        for rating in Rating:
            for n in (1502, 1751, 2500, tier_capacity(rating)):
                scores = scores_for_tier(n, rating)
                self.assertEqual(check_tier_invariants(rating, scores), [], (rating, n))
