"""
Shared fixtures: a throwaway in-memory SQLite database per test.
"""
import unittest
from uuid import UUID, uuid4

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.models import Base, Book, Rating, ShelfStatus, UserBook
from app.services.comparison_session import ComparisonSession, Judgment
from app.services.score_model import check_tier_invariants, scores_for_tier


def make_session() -> Session:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return factory()


class DatabaseTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.user_id = uuid4()

    def tearDown(self) -> None:
        self.db.close()
        self.db.get_bind().dispose()

    # ── Builders ──────────────────────────────────────────────────────────────

    def add_book(self, title: str) -> Book:
        book = Book(title=title, authors=["Anon"])
        self.db.add(book)
        self.db.commit()
        return book

    def add_shelved(
        self,
        title: str,
        status: ShelfStatus,
        *,
        user_id: UUID | None = None,
        **fields,
    ) -> UserBook:
        book = self.add_book(title)
        user_book = UserBook(
            user_id=user_id or self.user_id,
            book_id=book.id,
            status=status,
            custom_labels=fields.pop("custom_labels", []),
            **fields,
        )
        self.db.add(user_book)
        self.db.commit()
        return user_book

    def add_ranked(
        self,
        rating: Rating,
        titles: list[str],
        *,
        user_id: UUID | None = None,
    ) -> list[UserBook]:
        """Ranked read books, best first, already evenly scored."""
        books = [Book(title=title, authors=["Anon"]) for title in titles]
        self.db.add_all(books)
        self.db.flush()
        user_books = [
            UserBook(
                user_id=user_id or self.user_id,
                book_id=book.id,
                status=ShelfStatus.read,
                rating=rating,
                rank_score=score,
                custom_labels=[],
            )
            for book, score in zip(books, scores_for_tier(len(titles), rating))
        ]
        self.db.add_all(user_books)
        self.db.commit()
        return user_books

    # ── Reads ─────────────────────────────────────────────────────────────────

    def tier(self, rating: Rating, user_id: UUID | None = None) -> list[UserBook]:
        self.db.expire_all()
        return (
            self.db.query(UserBook)
            .filter(
                UserBook.user_id == (user_id or self.user_id),
                UserBook.status == ShelfStatus.read,
                UserBook.rating == rating,
                UserBook.rank_score.is_not(None),
            )
            .order_by(UserBook.rank_score.desc())
            .all()
        )

    def tier_ids(self, rating: Rating) -> list[UUID]:
        return [ub.id for ub in self.tier(rating)]

    def tier_scores(self, rating: Rating) -> list[float]:
        return [ub.rank_score for ub in self.tier(rating)]

    def assertTierSound(self, rating: Rating) -> None:
        self.assertEqual(check_tier_invariants(rating, self.tier_scores(rating)), [])


def answer_for(order: list[UUID]):
    """
    A reader whose true preference is *order* (best first): prefers the
    candidate exactly when it appears before the existing book.
    """

    def judge(candidate_id: UUID, existing_id: UUID) -> Judgment:
        if order.index(candidate_id) < order.index(existing_id):
            return Judgment.candidate_preferred
        return Judgment.existing_preferred

    return judge


def next_probe(flow) -> tuple[UUID, UUID] | None:
    if not flow.session_state:
        return None
    probe = ComparisonSession.from_state(flow.session_state).current_probe()
    if probe is None:
        return None
    return probe.candidate_id, probe.existing_id
