"""
Ranking store — the read/write contract the ranking engine needs over
user_books, ranking_flows and book_comparisons.

Mutating methods only flush; atomic() owns the transaction. Blocks nest, and
only the outermost block commits, so a caller can group a tier's score batch
with its flow bookkeeping and have all of it land or none of it.

No other module writes user_books.rank_score.
"""
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from app.db.models import (
    ACTIVE_FLOW_STATES,
    Book,
    BookComparison,
    FlowState,
    Rating,
    RankingFlow,
    ShelfStatus,
    UserBook,
)
from app.services.score_model import check_tier_invariants

logger = logging.getLogger(__name__)


class UserBookNotFoundError(Exception):
    """Raised when a shelf entry is not found or not owned by the user."""


class TransientPersistenceError(Exception):
    """Raised when the store is temporarily unreachable; safe to retry."""


class StaleTierError(Exception):
    """Raised when a tier changed underneath a computed score batch."""


@dataclass(frozen=True)
class TierMember:
    id: UUID
    rank_score: float


@dataclass(frozen=True)
class ScoreUpdate:
    user_book_id: UUID
    rank_score: float


def _is_transient(exc: DBAPIError) -> bool:
    return isinstance(exc, OperationalError) or bool(exc.connection_invalidated)


class RankingStore:
    def __init__(self, db: Session) -> None:
        self.db = db
        self._depth = 0

    # ── Transactions ──────────────────────────────────────────────────────────

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Commit on success, roll back on any error.

        Connection-level failures surface as TransientPersistenceError so the
        caller can retry the write; everything else propagates unchanged.
        """
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield
            self.db.commit()
        except DBAPIError as exc:
            self.db.rollback()
            if _is_transient(exc):
                raise TransientPersistenceError(str(exc.orig or exc)) from exc
            raise
        except BaseException:
            self.db.rollback()
            raise
        finally:
            self._depth = 0

    # ── User books ────────────────────────────────────────────────────────────

    def get_user_book(
        self,
        user_id: UUID,
        user_book_id: UUID,
        *,
        lock: bool = False,
    ) -> UserBook:
        query = self.db.query(UserBook).filter(
            UserBook.id == user_book_id,
            UserBook.user_id == user_id,
        )
        if lock:
            # Locked reads refresh the identity map copy too
            query = query.with_for_update().populate_existing()
        user_book = query.first()
        if user_book is None:
            raise UserBookNotFoundError(f"Shelf entry {user_book_id} not found")
        return user_book

    def find_user_book(self, user_id: UUID, book_id: UUID) -> UserBook | None:
        return (
            self.db.query(UserBook)
            .filter(UserBook.user_id == user_id, UserBook.book_id == book_id)
            .first()
        )

    def book_exists(self, book_id: UUID) -> bool:
        return self.db.query(Book.id).filter(Book.id == book_id).first() is not None

    def create_user_book(self, user_id: UUID, book_id: UUID, status: ShelfStatus) -> UserBook:
        user_book = UserBook(user_id=user_id, book_id=book_id, status=status, custom_labels=[])
        self.db.add(user_book)
        self.db.flush()
        return user_book

    def update_details(
        self,
        user_book: UserBook,
        *,
        notes: str | None = None,
        started_date: date | None = None,
        finished_date: date | None = None,
    ) -> None:
        """Apply incidental edits; None leaves a field unchanged."""
        if notes is not None:
            user_book.notes = notes
        if started_date is not None:
            user_book.started_date = started_date
        if finished_date is not None:
            user_book.finished_date = finished_date
        self.db.flush()

    def set_status(self, user_book: UserBook, status: ShelfStatus) -> None:
        user_book.status = status
        self.db.flush()

    def persist_rating(
        self,
        user_book: UserBook,
        rating: Rating,
        *,
        clear_score: bool = False,
    ) -> None:
        """
        Record the reader's rating before the book is ranked.

        The score is left alone unless *clear_score* is set, which the
        orchestrator does when the book is about to be ranked afresh.
        """
        user_book.rating = rating
        if clear_score:
            user_book.rank_score = None
        self.db.flush()

    def clear_ranking(self, user_book: UserBook) -> None:
        user_book.rating = None
        user_book.rank_score = None
        self.db.flush()

    def delete_user_book(self, user_book: UserBook) -> None:
        self.db.delete(user_book)
        self.db.flush()

    def restore_status(self, user_book: UserBook, snapshot: dict) -> None:
        """Put every snapshotted field back the way it was before the flow."""
        user_book.status = ShelfStatus(snapshot["status"])
        user_book.rating = Rating(snapshot["rating"]) if snapshot.get("rating") else None
        user_book.rank_score = snapshot.get("rank_score")
        user_book.notes = snapshot.get("notes")
        user_book.started_date = _parse_date(snapshot.get("started_date"))
        user_book.finished_date = _parse_date(snapshot.get("finished_date"))
        user_book.custom_labels = list(snapshot.get("custom_labels") or [])
        self.db.flush()

    # ── Tiers ─────────────────────────────────────────────────────────────────

    def load_tier_members(self, user_id: UUID, rating: Rating) -> list[TierMember]:
        """Scored read books of one tier, best first."""
        rows = (
            self.db.query(UserBook.id, UserBook.rank_score)
            .filter(
                UserBook.user_id == user_id,
                UserBook.status == ShelfStatus.read,
                UserBook.rating == rating,
                UserBook.rank_score.is_not(None),
            )
            .order_by(UserBook.rank_score.desc(), UserBook.created_at.asc(), UserBook.id.asc())
            .all()
        )
        return [TierMember(id=row.id, rank_score=row.rank_score) for row in rows]

    def load_tier_books(self, user_id: UUID, rating: Rating) -> list[tuple[UserBook, Book]]:
        return (
            self.db.query(UserBook, Book)
            .join(Book, UserBook.book_id == Book.id)
            .filter(
                UserBook.user_id == user_id,
                UserBook.status == ShelfStatus.read,
                UserBook.rating == rating,
                UserBook.rank_score.is_not(None),
            )
            .order_by(UserBook.rank_score.desc(), UserBook.created_at.asc(), UserBook.id.asc())
            .all()
        )

    def persist_scores(
        self,
        user_id: UUID,
        rating: Rating,
        updates: Sequence[ScoreUpdate],
    ) -> None:
        """
        Write a whole tier's scores as one batch.

        Every id must be a read book of this user and tier, and every scored
        member of the tier must be covered — otherwise the batch was computed
        against a stale view and StaleTierError is raised before any write.
        Only rank_score changes; updated_at is left untouched.
        """
        with self.atomic():
            live = {
                row.id: row.rank_score
                for row in (
                    self.db.query(UserBook.id, UserBook.rank_score)
                    .filter(
                        UserBook.user_id == user_id,
                        UserBook.status == ShelfStatus.read,
                        UserBook.rating == rating,
                    )
                    .with_for_update()
                    .all()
                )
            }
            update_ids = [u.user_book_id for u in updates]
            if len(set(update_ids)) != len(update_ids):
                raise ValueError("score batch contains duplicate ids")
            unknown = set(update_ids) - live.keys()
            if unknown:
                raise StaleTierError(
                    f"{len(unknown)} book(s) in the batch are no longer in the {rating.value} tier"
                )
            missed = {bid for bid, score in live.items() if score is not None} - set(update_ids)
            if missed:
                raise StaleTierError(
                    f"{len(missed)} ranked book(s) in the {rating.value} tier are missing from the batch"
                )

            ordered = sorted(updates, key=lambda u: u.rank_score, reverse=True)
            problems = check_tier_invariants(rating, [u.rank_score for u in ordered])
            if problems:
                raise ValueError("; ".join(problems))

            for item in updates:
                self.db.execute(
                    update(UserBook)
                    .where(UserBook.id == item.user_book_id)
                    .values(rank_score=item.rank_score, updated_at=UserBook.updated_at)
                    .execution_options(synchronize_session="fetch")
                )
            self.db.flush()
        logger.debug("Persisted %d score(s) for user=%s tier=%s", len(updates), user_id, rating.value)

    # ── Flows ─────────────────────────────────────────────────────────────────

    def add_flow(self, flow: RankingFlow) -> RankingFlow:
        self.db.add(flow)
        self.db.flush()
        return flow

    def get_flow(self, user_id: UUID, flow_id: UUID, *, lock: bool = False) -> RankingFlow | None:
        query = self.db.query(RankingFlow).filter(
            RankingFlow.id == flow_id,
            RankingFlow.user_id == user_id,
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    def active_flow_for_book(self, user_book_id: UUID) -> RankingFlow | None:
        return (
            self.db.query(RankingFlow)
            .filter(
                RankingFlow.user_book_id == user_book_id,
                RankingFlow.state.in_(ACTIVE_FLOW_STATES),
            )
            .first()
        )

    def flow_claiming_tier(
        self,
        user_id: UUID,
        rating: Rating,
        *,
        exclude_flow_id: UUID | None = None,
    ) -> RankingFlow | None:
        """The comparing flow that holds (user, rating), if any."""
        query = self.db.query(RankingFlow).filter(
            RankingFlow.user_id == user_id,
            RankingFlow.state == FlowState.pending_comparison,
            (RankingFlow.rating == rating) | (RankingFlow.vacated_rating == rating),
        )
        if exclude_flow_id is not None:
            query = query.filter(RankingFlow.id != exclude_flow_id)
        return query.first()

    def save_flow(self, flow: RankingFlow) -> None:
        self.db.add(flow)
        self.db.flush()

    def record_comparisons(
        self,
        user_id: UUID,
        flow_id: UUID | None,
        outcomes: Sequence[tuple[UUID, UUID]],
    ) -> None:
        for winner_id, loser_id in outcomes:
            self.db.add(
                BookComparison(
                    user_id=user_id,
                    flow_id=flow_id,
                    winner_user_book_id=winner_id,
                    loser_user_book_id=loser_id,
                )
            )
        self.db.flush()


def snapshot_user_book(user_book: UserBook, *, was_newly_shelved: bool) -> dict:
    """JSON-safe copy of the fields a flow may change."""
    return {
        "status": user_book.status.value if user_book.status else ShelfStatus.none.value,
        "rating": user_book.rating.value if user_book.rating else None,
        "rank_score": user_book.rank_score,
        "notes": user_book.notes,
        "started_date": user_book.started_date.isoformat() if user_book.started_date else None,
        "finished_date": user_book.finished_date.isoformat() if user_book.finished_date else None,
        "custom_labels": list(user_book.custom_labels or []),
        "was_newly_shelved": was_newly_shelved,
    }


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None
