"""
Ranking business logic — rate-and-rank flows, removals, reorder, healing.

A flow walks one shelf entry from "just finished" to a committed rank_score:

    (idle) ──start──▶ pending_rating ──rating──▶ pending_comparison ──resolve──▶ committed
                           │                            │
                           └──────────── abort ─────────┴──▶ aborted

  • start      — snapshot the entry (creating it if needed), mark it read.
  • rating     — write the rating at once, clear any old score, open a
                 comparison session against the tier and claim the tier.
  • judgments  — bisect; each answer is saved with the flow, nothing else.
  • resolve    — recompute the tier (and the tier the book left, if any)
                 and write every score in one transaction.
  • abort      — put the snapshot back, or delete an entry the flow created.

Tier-touching steps run under tier_locks; a comparing flow additionally
claims its tier in ranking_flows so no other operation starts on it.
"""
import logging
from datetime import date
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from app.core.config import settings
from app.db.models import (
    ACTIVE_FLOW_STATES,
    Book,
    FlowState,
    Rating,
    RankingFlow,
    ShelfStatus,
    UserBook,
)
from app.services.comparison_session import ComparisonSession, Judgment
from app.services.ranking_store import (
    RankingStore,
    StaleTierError,
    TransientPersistenceError,
    UserBookNotFoundError,
    snapshot_user_book,
)
from app.services.redistribution import (
    TierPlan,
    apply_plan,
    ensure_room,
    plan_insertion,
    plan_redistribution,
    plan_removal,
    removal_moves_ceiling,
    tier_violations,
)
from app.services.score_model import TIER_ORDER
from app.services.tier_locks import TierBusyError, tier_locks

logger = logging.getLogger(__name__)


class BookNotFoundError(Exception):
    """Raised when the catalogue has no such book."""


class RankingPreconditionError(Exception):
    """Raised when a book cannot be ranked in its current state."""


class FlowNotFoundError(Exception):
    """Raised when a flow is not found or not owned by the user."""


class FlowStateError(Exception):
    """Raised when a flow step does not fit the flow's current state."""


class RevertFailedError(Exception):
    """
    Raised when rolling back an aborted flow could not be written.

    The shelf entry may still carry changes made during the flow, so the
    client must not report "no changes made".
    """


# ── Helpers ──────────────────────────────────────────────────────────────────


def _flow_or_raise(store: RankingStore, user_id: UUID, flow_id: UUID) -> RankingFlow:
    flow = store.get_flow(user_id, flow_id)
    if flow is None:
        raise FlowNotFoundError(f"Ranking flow {flow_id} not found")
    return flow


def _ensure_tier_free(
    store: RankingStore,
    user_id: UUID,
    rating: Rating,
    *,
    flow_id: UUID | None = None,
) -> None:
    holder = store.flow_claiming_tier(user_id, rating, exclude_flow_id=flow_id)
    if holder is not None:
        raise TierBusyError(
            f"Finish or cancel ranking your other {rating.value} book first"
        )


def _session_of(flow: RankingFlow) -> ComparisonSession:
    if not flow.session_state:
        raise FlowStateError("This flow has no comparison session yet; choose a rating first")
    return ComparisonSession.from_state(flow.session_state)


def _commit_retrying() -> Retrying:
    return Retrying(
        stop=stop_after_attempt(settings.COMMIT_RETRY_ATTEMPTS),
        wait=wait_random_exponential(multiplier=0.1, max=settings.COMMIT_RETRY_MAX_WAIT_SECONDS),
        retry=retry_if_exception_type(TransientPersistenceError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


# ── Read operations ──────────────────────────────────────────────────────────


def get_flow(db: Session, user_id: UUID, flow_id: UUID) -> RankingFlow:
    return _flow_or_raise(RankingStore(db), user_id, flow_id)


def describe_flow(db: Session, flow: RankingFlow) -> dict:
    """Build a dict matching the FlowResponse schema."""
    probe = None
    comparisons_made = 0
    if flow.session_state and flow.state is FlowState.pending_comparison:
        session = ComparisonSession.from_state(flow.session_state)
        comparisons_made = len(session.history)
        current = session.current_probe()
        if current is not None:
            existing = db.get(UserBook, current.existing_id)
            book = db.get(Book, existing.book_id) if existing is not None else None
            probe = {
                "candidate_user_book_id": current.candidate_id,
                "existing_user_book_id": current.existing_id,
                "existing_title": book.title if book is not None else None,
                "existing_rank": current.member_index + 1,
            }

    rank_score = None
    if flow.state is FlowState.committed and flow.user_book_id is not None:
        user_book = db.get(UserBook, flow.user_book_id)
        rank_score = user_book.rank_score if user_book is not None else None

    return {
        "id": flow.id,
        "user_book_id": flow.user_book_id,
        "state": flow.state.value,
        "rating": flow.rating.value if flow.rating else None,
        "probe": probe,
        "comparisons_made": comparisons_made,
        "resolved_rank": flow.resolved_rank,
        "rank_score": rank_score,
        "created_at": flow.created_at,
        "updated_at": flow.updated_at,
    }


def _hydrate_ranked(user_book: UserBook, book: Book, rank: int) -> dict:
    return {
        "user_book_id": user_book.id,
        "book_id": book.id,
        "title": book.title,
        "authors": list(book.authors or []),
        "rating": user_book.rating.value,
        "rank": rank,
        "rank_score": user_book.rank_score,
    }


def list_ranked_books(
    db: Session,
    user_id: UUID,
    *,
    rating: Rating | None = None,
) -> list[dict]:
    """
    Return the user's ranked read books, liked -> fine -> disliked, best
    first within each tier. Optionally restricted to one tier.
    """
    store = RankingStore(db)
    tiers = (Rating(rating),) if rating is not None else TIER_ORDER
    items: list[dict] = []
    for tier in tiers:
        rows = store.load_tier_books(user_id, tier)
        items.extend(
            _hydrate_ranked(user_book, book, rank)
            for rank, (user_book, book) in enumerate(rows, start=1)
        )
    return items


# ── Start ────────────────────────────────────────────────────────────────────


def _open_flow(
    store: RankingStore,
    user_id: UUID,
    user_book: UserBook,
    *,
    was_newly_shelved: bool,
    notes: str | None,
    started_date: date | None,
    finished_date: date | None,
) -> RankingFlow:
    if not was_newly_shelved and store.active_flow_for_book(user_book.id) is not None:
        raise FlowStateError("This book is already being ranked")

    snapshot = snapshot_user_book(user_book, was_newly_shelved=was_newly_shelved)
    if user_book.status is not ShelfStatus.read:
        store.set_status(user_book, ShelfStatus.read)
    store.update_details(
        user_book,
        notes=notes,
        started_date=started_date,
        finished_date=finished_date,
    )
    return store.add_flow(
        RankingFlow(
            user_id=user_id,
            user_book_id=user_book.id,
            state=FlowState.pending_rating,
            snapshot=snapshot,
        )
    )


def start_flow(
    db: Session,
    user_id: UUID,
    book_id: UUID,
    *,
    notes: str | None = None,
    started_date: date | None = None,
    finished_date: date | None = None,
) -> RankingFlow:
    """
    Mark a book as read and open a flow for rating and ranking it.

    Shelves the book if the user has no entry for it yet; that entry is
    deleted again if the flow is aborted. Notes and dates supplied here are
    written straight away so they survive an interrupted flow.
    """
    store = RankingStore(db)
    if not store.book_exists(book_id):
        raise BookNotFoundError(f"Book {book_id} not found")

    with store.atomic():
        user_book = store.find_user_book(user_id, book_id)
        was_newly_shelved = user_book is None
        if was_newly_shelved:
            user_book = store.create_user_book(user_id, book_id, ShelfStatus.read)
        flow = _open_flow(
            store,
            user_id,
            user_book,
            was_newly_shelved=was_newly_shelved,
            notes=notes,
            started_date=started_date,
            finished_date=finished_date,
        )

    logger.info(
        "Flow %s started for user_book=%s (new=%s)", flow.id, user_book.id, was_newly_shelved
    )
    return flow


def start_rerank(db: Session, user_id: UUID, user_book_id: UUID) -> RankingFlow:
    """
    Open a flow that ranks an already-ranked book afresh, e.g. after a
    re-read. Its current score stays in place until a new rating is chosen.
    """
    store = RankingStore(db)
    with store.atomic():
        user_book = store.get_user_book(user_id, user_book_id)
        if user_book.status is not ShelfStatus.read or user_book.rating is None:
            raise RankingPreconditionError("Only rated books on the read shelf can be re-ranked")
        flow = _open_flow(
            store,
            user_id,
            user_book,
            was_newly_shelved=False,
            notes=None,
            started_date=None,
            finished_date=None,
        )
    logger.info("Re-rank flow %s started for user_book=%s", flow.id, user_book_id)
    return flow


# ── Rating + comparisons ─────────────────────────────────────────────────────


def submit_rating(
    db: Session,
    user_id: UUID,
    flow_id: UUID,
    rating: Rating | str,
) -> RankingFlow:
    """
    Record the reader's rating and open a comparison session for that tier.

    An empty tier needs no comparisons, so the flow commits immediately.
    May be called again while comparing to change the rating; the session
    restarts against the new tier.
    """
    rating = Rating(rating)
    store = RankingStore(db)
    flow = _flow_or_raise(store, user_id, flow_id)
    if flow.state not in ACTIVE_FLOW_STATES:
        raise FlowStateError(f"Cannot rate a flow that is {flow.state.value}")

    user_book = store.get_user_book(user_id, flow.user_book_id)
    if user_book.status is not ShelfStatus.read:
        raise RankingPreconditionError("Only books on the read shelf can be ranked")

    # A scored book leaves its tier the moment its score is cleared below.
    if user_book.rank_score is not None:
        vacated = user_book.rating
    else:
        vacated = flow.vacated_rating
    with tier_locks.hold(user_id, rating, vacated, flow.rating):
        _ensure_tier_free(store, user_id, rating, flow_id=flow.id)
        if vacated is not None:
            _ensure_tier_free(store, user_id, vacated, flow_id=flow.id)

        members = store.load_tier_members(user_id, rating)
        session = ComparisonSession.for_candidate(user_book.id, rating, [m.id for m in members])
        ensure_room(rating, len(session.member_ids) + 1)
        session.start()

        with store.atomic():
            if user_book.rank_score is not None:
                # Other flows may have rescored the tier since the snapshot.
                flow.snapshot = {**flow.snapshot, "rank_score": user_book.rank_score}
            store.persist_rating(user_book, rating, clear_score=True)
            flow.rating = rating
            flow.vacated_rating = vacated
            flow.state = FlowState.pending_comparison
            flow.session_state = session.to_state()
            flow.resolved_rank = None
            store.save_flow(flow)

        logger.info(
            "Flow %s rated %s; %d book(s) in tier", flow.id, rating.value, len(session.member_ids)
        )
        if session.is_resolved:
            _commit_locked(store, flow, session)
    return flow


def submit_judgment(
    db: Session,
    user_id: UUID,
    flow_id: UUID,
    judgment: Judgment | str,
) -> RankingFlow:
    """Apply one head-to-head answer; commits the flow when bisection resolves."""
    store = RankingStore(db)
    flow = _flow_or_raise(store, user_id, flow_id)
    if flow.state is not FlowState.pending_comparison:
        raise FlowStateError(f"Cannot compare in a flow that is {flow.state.value}")

    with tier_locks.hold(user_id, flow.rating, flow.vacated_rating):
        session = _session_of(flow)
        if session.is_resolved:
            raise FlowStateError("Comparisons are finished; commit the flow")
        session.record(judgment)
        with store.atomic():
            flow.session_state = session.to_state()
            store.save_flow(flow)
        if session.is_resolved:
            _commit_locked(store, flow, session)
    return flow


# ── Commit ───────────────────────────────────────────────────────────────────


def commit_flow(db: Session, user_id: UUID, flow_id: UUID) -> RankingFlow:
    """
    Write the scores for a flow whose comparisons are finished.

    Used to retry after a store failure: the resolved rank is reused, so
    the reader is not asked to compare again. Committed flows are returned
    unchanged.
    """
    store = RankingStore(db)
    flow = _flow_or_raise(store, user_id, flow_id)
    if flow.state is FlowState.committed:
        return flow
    if flow.state is not FlowState.pending_comparison:
        raise FlowStateError(f"Cannot commit a flow that is {flow.state.value}")

    with tier_locks.hold(user_id, flow.rating, flow.vacated_rating):
        session = _session_of(flow)
        if not session.is_resolved:
            raise FlowStateError("Comparisons are not finished yet")
        _commit_locked(store, flow, session)
    return flow


def _commit_locked(store: RankingStore, flow: RankingFlow, session: ComparisonSession) -> None:
    """Caller holds the tier locks for flow.rating and flow.vacated_rating."""
    user_id = flow.user_id
    rating = flow.rating
    candidate_id = session.candidate_id

    current_ids = [m.id for m in store.load_tier_members(user_id, rating) if m.id != candidate_id]
    if current_ids != session.member_ids:
        # The resolved rank only applies to the tier it was computed against.
        fresh = ComparisonSession.for_candidate(candidate_id, rating, current_ids)
        fresh.start()
        with store.atomic():
            flow.session_state = fresh.to_state()
            store.save_flow(flow)
        if not fresh.is_resolved:
            logger.warning("Flow %s: %s tier changed during comparisons", flow.id, rating.value)
            raise StaleTierError(
                f"Your {rating.value} books changed while you were comparing; please compare again"
            )
        session = fresh

    rank = session.resolved_rank
    plan = plan_insertion(rating, current_ids, candidate_id, rank)

    vacated_plan: TierPlan | None = None
    vacated = flow.vacated_rating
    if vacated is not None and vacated is not rating:
        vacated_plan = plan_removal(
            vacated, store.load_tier_members(user_id, vacated), candidate_id
        )
        if removal_moves_ceiling(vacated, flow.snapshot.get("rank_score")):
            logger.info("Flow %s: %s tier loses its top book", flow.id, vacated.value)

    outcomes = session.outcomes()
    flow_id = flow.id

    for attempt in _commit_retrying():
        with attempt:
            with store.atomic():
                if vacated_plan is not None:
                    apply_plan(store, user_id, vacated_plan)
                apply_plan(store, user_id, plan)
                store.record_comparisons(user_id, flow_id, outcomes)
                flow.state = FlowState.committed
                flow.resolved_rank = rank
                store.save_flow(flow)

    logger.info(
        "Flow %s committed: rank %d of %d in %s (score %.3f)",
        flow_id,
        rank,
        len(plan.ordered_ids),
        rating.value,
        plan.score_of(candidate_id),
    )


# ── Abort ────────────────────────────────────────────────────────────────────


def abort_flow(db: Session, user_id: UUID, flow_id: UUID) -> RankingFlow:
    """
    Cancel a flow and restore the shelf entry to its pre-flow state.

    An entry the flow created is deleted; otherwise status, rating, score,
    notes, dates and labels are put back. Judgments already made are simply
    dropped. Aborting an aborted flow is a no-op.

    Raises:
        RevertFailedError: if the rollback itself could not be written.
    """
    store = RankingStore(db)
    flow = _flow_or_raise(store, user_id, flow_id)
    if flow.state is FlowState.aborted:
        return flow
    if flow.state is FlowState.committed:
        raise FlowStateError("This book is already ranked; remove it from the read shelf instead")

    snapshot = dict(flow.snapshot)
    with tier_locks.hold(user_id, flow.rating, flow.vacated_rating):
        try:
            with store.atomic():
                user_book = (
                    store.db.get(UserBook, flow.user_book_id)
                    if flow.user_book_id is not None
                    else None
                )
                flow.state = FlowState.aborted
                flow.session_state = None
                if user_book is not None and snapshot.get("was_newly_shelved"):
                    flow.user_book_id = None
                    store.save_flow(flow)
                    store.delete_user_book(user_book)
                else:
                    store.save_flow(flow)
                    if user_book is not None:
                        store.restore_status(user_book, snapshot)
        except (SQLAlchemyError, TransientPersistenceError) as exc:
            logger.error("Revert failed for flow %s", flow_id, exc_info=True)
            raise RevertFailedError(
                "Cancelling did not finish; some changes to this book may remain"
            ) from exc

    logger.info("Flow %s aborted", flow_id)
    return flow


# ── Removal ──────────────────────────────────────────────────────────────────


def _redistribute_after_removal(
    store: RankingStore,
    user_id: UUID,
    rating: Rating,
    removed_id: UUID,
    removed_score: float | None,
) -> TierPlan:
    # Every removal rescans and rescores the whole tier; a ceiling loss is
    # only worth noting.
    if removal_moves_ceiling(rating, removed_score):
        logger.info("User %s: %s tier lost its top book", user_id, rating.value)
    plan = plan_removal(rating, store.load_tier_members(user_id, rating), removed_id)
    apply_plan(store, user_id, plan)
    return plan


def _ranked_tier(user_book: UserBook) -> Rating | None:
    return user_book.rating if user_book.rank_score is not None else None


def _reload_locked(
    store: RankingStore,
    user_id: UUID,
    user_book_id: UUID,
    rating: Rating | None,
) -> UserBook:
    """
    Re-read a shelf entry once the lock for *rating* is held. The entry
    must still be ranked in that tier and must not be mid-flow.
    """
    user_book = store.get_user_book(user_id, user_book_id, lock=True)
    if _ranked_tier(user_book) is not rating:
        raise StaleTierError("This book was re-rated in the meantime; please try again")
    if store.active_flow_for_book(user_book.id) is not None:
        raise FlowStateError("This book is being ranked; finish or cancel that first")
    return user_book


def change_status(
    db: Session,
    user_id: UUID,
    user_book_id: UUID,
    status: ShelfStatus | str,
) -> UserBook:
    """
    Move a shelf entry off the read shelf.

    Clears rating and score (notes, dates and labels stay) and rescores
    the tier it left. Putting a book *on* the read shelf goes through
    start_flow instead, because that needs a rating and a rank.
    """
    status = ShelfStatus(status)
    if status is ShelfStatus.read:
        raise RankingPreconditionError("Use a ranking flow to mark a book as read")

    store = RankingStore(db)
    rating = _ranked_tier(store.get_user_book(user_id, user_book_id))
    with tier_locks.hold(user_id, rating):
        user_book = _reload_locked(store, user_id, user_book_id, rating)
        if rating is not None:
            _ensure_tier_free(store, user_id, rating)
        removed_score = user_book.rank_score
        with store.atomic():
            store.clear_ranking(user_book)
            store.set_status(user_book, status)
            if rating is not None:
                _redistribute_after_removal(store, user_id, rating, user_book_id, removed_score)
    return user_book


def remove_user_book(db: Session, user_id: UUID, user_book_id: UUID) -> bool:
    """
    Delete a shelf entry entirely and rescore the tier it was ranked in.

    Returns True if deleted, False if not found.
    """
    store = RankingStore(db)
    try:
        rating = _ranked_tier(store.get_user_book(user_id, user_book_id))
        with tier_locks.hold(user_id, rating):
            user_book = _reload_locked(store, user_id, user_book_id, rating)
            if rating is not None:
                _ensure_tier_free(store, user_id, rating)
            removed_score = user_book.rank_score
            with store.atomic():
                store.delete_user_book(user_book)
                if rating is not None:
                    _redistribute_after_removal(
                        store, user_id, rating, user_book_id, removed_score
                    )
    except UserBookNotFoundError:
        return False
    return True


# ── Reorder + heal ───────────────────────────────────────────────────────────


def reorder_tier(
    db: Session,
    user_id: UUID,
    rating: Rating | str,
    ordered_user_book_ids: list[UUID],
) -> TierPlan:
    """
    Replace a tier's order with a hand-arranged one (drag to reorder).

    The list must name every ranked book in the tier exactly once.
    """
    rating = Rating(rating)
    store = RankingStore(db)
    with tier_locks.hold(user_id, rating):
        _ensure_tier_free(store, user_id, rating)
        current = {m.id for m in store.load_tier_members(user_id, rating)}
        if (
            len(ordered_user_book_ids) != len(current)
            or set(ordered_user_book_ids) != current
        ):
            raise RankingPreconditionError(
                f"The new order must list every ranked {rating.value} book exactly once"
            )
        plan = plan_redistribution(rating, ordered_user_book_ids)
        with store.atomic():
            apply_plan(store, user_id, plan)
    return plan


def heal_tier(db: Session, user_id: UUID, rating: Rating | str) -> list[str]:
    """
    Check a tier's scores and rescore it in its current order if any
    invariant is broken. Returns the problems found (empty if none).
    """
    rating = Rating(rating)
    store = RankingStore(db)
    with tier_locks.hold(user_id, rating):
        _ensure_tier_free(store, user_id, rating)
        members = store.load_tier_members(user_id, rating)
        problems = tier_violations(rating, members)
        if problems:
            logger.warning(
                "Healing %s tier for user=%s: %s", rating.value, user_id, "; ".join(problems)
            )
            with store.atomic():
                apply_plan(store, user_id, plan_redistribution(rating, members))
    return problems
