"""
Rankings API — /rankings
──────────────────────────
Endpoints:
  GET    /rankings/me                              — Ranked read books, best first per tier
  POST   /rankings/flows                           — Mark a book read and start ranking it (201)
  POST   /rankings/flows/rerank/{user_book_id}     — Rank an already-ranked book afresh (201)
  GET    /rankings/flows/{flow_id}                 — Flow state + the pair to compare next
  POST   /rankings/flows/{flow_id}/rating          — Choose liked / fine / disliked
  POST   /rankings/flows/{flow_id}/judgments       — Answer one head-to-head comparison
  POST   /rankings/flows/{flow_id}/commit          — Retry the final write after a failure
  DELETE /rankings/flows/{flow_id}                 — Cancel and revert (204)
  PATCH  /rankings/user-books/{user_book_id}/status — Move a book off the read shelf
  DELETE /rankings/user-books/{user_book_id}        — Unshelve a book (204)
  PUT    /rankings/tiers/{rating}/order            — Hand-reorder a whole tier
  POST   /rankings/tiers/{rating}/heal             — Rescore a tier whose scores drifted
"""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.db.models import Rating
from app.db.session import get_db
from app.deps.auth import get_current_user_id
from app.schemas.rankings import (
    FlowResponse,
    HealResponse,
    JudgmentRequest,
    RankedBookItem,
    RatingRequest,
    ReorderRequest,
    ShelfEntryResponse,
    StartFlowRequest,
    StatusChangeRequest,
    TierOrderResponse,
)
from app.services.comparison_session import ComparisonSessionError
from app.services.ranking_service import (
    BookNotFoundError,
    FlowNotFoundError,
    FlowStateError,
    RankingPreconditionError,
    RevertFailedError,
    abort_flow,
    change_status,
    commit_flow,
    describe_flow,
    get_flow,
    heal_tier,
    list_ranked_books,
    remove_user_book,
    reorder_tier,
    start_flow,
    start_rerank,
    submit_judgment,
    submit_rating,
)
from app.services.ranking_store import (
    StaleTierError,
    TransientPersistenceError,
    UserBookNotFoundError,
)
from app.services.redistribution import TierCapacityError
from app.services.tier_locks import TierBusyError

router = APIRouter()


def _error(code: str, message: str) -> dict:
    """Standard error envelope."""
    return {"error": {"code": code, "message": message}}


# Order matters only for readability; the classes do not overlap.
_ERROR_MAP: tuple[tuple[type[Exception], int, str], ...] = (
    (BookNotFoundError, status.HTTP_404_NOT_FOUND, "BOOK_NOT_FOUND"),
    (UserBookNotFoundError, status.HTTP_404_NOT_FOUND, "USER_BOOK_NOT_FOUND"),
    (FlowNotFoundError, status.HTTP_404_NOT_FOUND, "FLOW_NOT_FOUND"),
    (RankingPreconditionError, status.HTTP_422_UNPROCESSABLE_ENTITY, "PRECONDITION_FAILED"),
    (TierBusyError, status.HTTP_409_CONFLICT, "TIER_BUSY"),
    (TierCapacityError, status.HTTP_422_UNPROCESSABLE_ENTITY, "TIER_FULL"),
    (FlowStateError, status.HTTP_409_CONFLICT, "INVALID_FLOW_STATE"),
    (ComparisonSessionError, status.HTTP_409_CONFLICT, "INVALID_FLOW_STATE"),
    (StaleTierError, status.HTTP_409_CONFLICT, "STALE_TIER"),
    (TransientPersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE, "STORE_UNAVAILABLE"),
    (RevertFailedError, status.HTTP_500_INTERNAL_SERVER_ERROR, "REVERT_FAILED"),
)

_HANDLED = tuple(exc_type for exc_type, _, _ in _ERROR_MAP)


def _raise_http(exc: Exception) -> None:
    for exc_type, status_code, code in _ERROR_MAP:
        if isinstance(exc, exc_type):
            raise HTTPException(status_code=status_code, detail=_error(code, str(exc))) from exc
    raise exc


# ── Ranked list ───────────────────────────────────────────────────────────────


@router.get("/me", response_model=list[RankedBookItem])
def get_my_ranked_books(
    rating: Rating | None = Query(None, description="Filter by tier (liked/fine/disliked)"),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> list[dict]:
    """Return the caller's ranked books, liked -> fine -> disliked, best first."""
    return list_ranked_books(db, user_id, rating=rating)


# ── Flows ─────────────────────────────────────────────────────────────────────


@router.post("/flows", response_model=FlowResponse, status_code=status.HTTP_201_CREATED)
def start_flow_endpoint(
    payload: StartFlowRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    """Mark a book as read (shelving it if needed) and start ranking it."""
    try:
        flow = start_flow(
            db,
            user_id,
            payload.book_id,
            notes=payload.notes,
            started_date=payload.started_date,
            finished_date=payload.finished_date,
        )
    except _HANDLED as exc:
        _raise_http(exc)
    return describe_flow(db, flow)


@router.post(
    "/flows/rerank/{user_book_id}",
    response_model=FlowResponse,
    status_code=status.HTTP_201_CREATED,
)
def start_rerank_endpoint(
    user_book_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    try:
        flow = start_rerank(db, user_id, user_book_id)
    except _HANDLED as exc:
        _raise_http(exc)
    return describe_flow(db, flow)


@router.get("/flows/{flow_id}", response_model=FlowResponse)
def get_flow_endpoint(
    flow_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    """Current state of a flow; lets a restarted client resume comparing."""
    try:
        flow = get_flow(db, user_id, flow_id)
    except _HANDLED as exc:
        _raise_http(exc)
    return describe_flow(db, flow)


@router.post("/flows/{flow_id}/rating", response_model=FlowResponse)
def submit_rating_endpoint(
    flow_id: UUID,
    payload: RatingRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    """
    Choose a rating. The response carries the first pair to compare, or a
    committed flow if the tier was empty.
    """
    try:
        flow = submit_rating(db, user_id, flow_id, payload.rating)
    except _HANDLED as exc:
        _raise_http(exc)
    return describe_flow(db, flow)


@router.post("/flows/{flow_id}/judgments", response_model=FlowResponse)
def submit_judgment_endpoint(
    flow_id: UUID,
    payload: JudgmentRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    try:
        flow = submit_judgment(db, user_id, flow_id, payload.judgment)
    except _HANDLED as exc:
        _raise_http(exc)
    return describe_flow(db, flow)


@router.post("/flows/{flow_id}/commit", response_model=FlowResponse)
def commit_flow_endpoint(
    flow_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    """Retry the final write using the rank already found."""
    try:
        flow = commit_flow(db, user_id, flow_id)
    except _HANDLED as exc:
        _raise_http(exc)
    return describe_flow(db, flow)


@router.delete("/flows/{flow_id}", status_code=status.HTTP_204_NO_CONTENT)
def abort_flow_endpoint(
    flow_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> None:
    """Cancel a flow. 204 means every change made during it was undone."""
    try:
        abort_flow(db, user_id, flow_id)
    except _HANDLED as exc:
        _raise_http(exc)


# ── Shelf entries ─────────────────────────────────────────────────────────────


@router.patch("/user-books/{user_book_id}/status", response_model=ShelfEntryResponse)
def change_status_endpoint(
    user_book_id: UUID,
    payload: StatusChangeRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Move a book off the read shelf; its old tier is rescored."""
    try:
        return change_status(db, user_id, user_book_id, payload.status)
    except _HANDLED as exc:
        _raise_http(exc)


@router.delete("/user-books/{user_book_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_user_book_endpoint(
    user_book_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> None:
    """Remove a book from every shelf. Only the owner may do this."""
    try:
        deleted = remove_user_book(db, user_id, user_book_id)
    except _HANDLED as exc:
        _raise_http(exc)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error("USER_BOOK_NOT_FOUND", f"Shelf entry {user_book_id} not found"),
        )


# ── Tiers ─────────────────────────────────────────────────────────────────────


@router.put("/tiers/{rating}/order", response_model=TierOrderResponse)
def reorder_tier_endpoint(
    rating: Rating,
    payload: ReorderRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    try:
        plan = reorder_tier(db, user_id, rating, payload.user_book_ids)
    except _HANDLED as exc:
        _raise_http(exc)
    return {
        "rating": rating,
        "items": [
            {"user_book_id": u.user_book_id, "rank_score": u.rank_score}
            for u in plan.updates
        ],
    }


@router.post("/tiers/{rating}/heal", response_model=HealResponse)
def heal_tier_endpoint(
    rating: Rating,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    try:
        problems = heal_tier(db, user_id, rating)
    except _HANDLED as exc:
        _raise_http(exc)
    return {"rating": rating, "healed": bool(problems), "problems": problems}
