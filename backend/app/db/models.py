"""
SQLAlchemy ORM models.

Books and users are owned by other services; this schema keeps only what the
ranking engine reads and writes:

  books             — minimal catalogue row (title, authors) referenced by id
  user_books        — one user's shelf entry for one book; carries rank_score
  ranking_flows     — a resumable "rate and rank" flow and its snapshot
  book_comparisons  — head-to-head history written when a flow commits

Enums are stored as plain strings (native_enum=False) so the same models
run on Postgres and on the SQLite database used by the test suite.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, relationship


# ── Base ──────────────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    pass


# ── Enums ─────────────────────────────────────────────────────────────────────

class ShelfStatus(str, PyEnum):
    read = "read"
    currently_reading = "currently_reading"
    want_to_read = "want_to_read"
    none = "none"


class Rating(str, PyEnum):
    """Rating tiers, best first."""

    liked = "liked"
    fine = "fine"
    disliked = "disliked"


class FlowState(str, PyEnum):
    pending_rating = "pending_rating"
    pending_comparison = "pending_comparison"
    committed = "committed"
    aborted = "aborted"


ACTIVE_FLOW_STATES = (FlowState.pending_rating, FlowState.pending_comparison)


def _enum_column_type(enum_cls: type[PyEnum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# ── Timestamp helper ──────────────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Models ────────────────────────────────────────────────────────────────────

class Book(Base):
    """Catalogue entry. Immutable from the ranking engine's point of view."""
    __tablename__ = "books"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(500), nullable=False, index=True)
    authors = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    user_books = relationship("UserBook", back_populates="book")

    def __repr__(self) -> str:
        return f"<Book id={self.id} title={self.title!r}>"


class UserBook(Base):
    """
    One user's shelf entry for one book.

    rank_score — 0.000–10.000, present only for read books with a rating.
                 Written exclusively by the ranking engine; within a tier the
                 scores are strictly descending and the best book sits at the
                 tier ceiling (10.0 / 6.5 / 3.5).
    """
    __tablename__ = "user_books"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    # Users live in the account service, so no FK.
    user_id = Column(Uuid, nullable=False, index=True)
    book_id = Column(
        Uuid,
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(
        _enum_column_type(ShelfStatus, "shelf_status"),
        nullable=False,
        default=ShelfStatus.want_to_read,
    )
    rating = Column(_enum_column_type(Rating, "book_rating"), nullable=True)
    rank_score = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    started_date = Column(Date, nullable=True)
    finished_date = Column(Date, nullable=True)
    custom_labels = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_user_book"),
        # Tier scan: one user's read books of one rating, best first
        Index("idx_user_books_user_rating_score", "user_id", "rating", "rank_score"),
        CheckConstraint(
            "rank_score IS NULL OR (rank_score >= 0.0 AND rank_score <= 10.0)",
            name="chk_rank_score_0_10",
        ),
        CheckConstraint(
            "rank_score IS NULL OR (status = 'read' AND rating IS NOT NULL)",
            name="chk_rank_score_requires_read_rating",
        ),
        CheckConstraint(
            "rank_score IS NULL OR "
            "(rating = 'liked' AND rank_score > 6.5 AND rank_score <= 10.0) OR "
            "(rating = 'fine' AND rank_score > 3.5 AND rank_score <= 6.5) OR "
            "(rating = 'disliked' AND rank_score >= 0.0 AND rank_score <= 3.5)",
            name="chk_rank_score_by_rating",
        ),
    )

    book = relationship("Book", back_populates="user_books")

    def __repr__(self) -> str:
        return (
            f"<UserBook user={self.user_id} book={self.book_id} "
            f"status={self.status} rating={self.rating} score={self.rank_score}>"
        )


class RankingFlow(Base):
    """
    A "rate and rank" flow for one UserBook.

    snapshot       — pre-flow field values used to revert on abort.
    session_state  — serialised ComparisonSession, so a flow survives restarts.
    rating         — tier the book is being ranked into (claimed while comparing).
    vacated_rating — tier the book held a score in before the flow, if any;
                     claimed too, because commit redistributes it.
    """
    __tablename__ = "ranking_flows"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    user_book_id = Column(
        Uuid,
        ForeignKey("user_books.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    state = Column(
        _enum_column_type(FlowState, "flow_state"),
        nullable=False,
        default=FlowState.pending_rating,
    )
    rating = Column(_enum_column_type(Rating, "book_rating"), nullable=True)
    vacated_rating = Column(_enum_column_type(Rating, "book_rating"), nullable=True)
    snapshot = Column(JSON, nullable=False, default=dict)
    session_state = Column(JSON, nullable=True)
    resolved_rank = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_ranking_flows_user_state", "user_id", "state"),
        CheckConstraint(
            "resolved_rank IS NULL OR resolved_rank >= 1",
            name="chk_resolved_rank_positive",
        ),
    )

    user_book = relationship("UserBook")

    def __repr__(self) -> str:
        return (
            f"<RankingFlow id={self.id} user_book={self.user_book_id} "
            f"state={self.state} rating={self.rating}>"
        )


class BookComparison(Base):
    """A single head-to-head judgment, recorded when its flow commits."""
    __tablename__ = "book_comparisons"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    flow_id = Column(
        Uuid,
        ForeignKey("ranking_flows.id", ondelete="SET NULL"),
        nullable=True,
    )
    winner_user_book_id = Column(
        Uuid,
        ForeignKey("user_books.id", ondelete="CASCADE"),
        nullable=False,
    )
    loser_user_book_id = Column(
        Uuid,
        ForeignKey("user_books.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "winner_user_book_id <> loser_user_book_id",
            name="chk_comparison_distinct_books",
        ),
    )

    def __repr__(self) -> str:
        return f"<BookComparison {self.winner_user_book_id} > {self.loser_user_book_id}>"
