"""
Ranking request/response schemas.
"""
from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from app.db.models import FlowState, Rating, ShelfStatus
from app.services.comparison_session import Judgment


class StartFlowRequest(BaseModel):
    """Payload for POST /rankings/flows."""

    book_id: UUID
    notes: str | None = None
    started_date: date | None = None
    finished_date: date | None = None

    @field_validator("notes")
    @classmethod
    def cap_notes_length(cls, v: str | None) -> str | None:
        if v is not None and len(v) > 2000:
            raise ValueError("Notes cannot exceed 2000 characters")
        return v

    @model_validator(mode="after")
    def finished_not_before_started(self) -> "StartFlowRequest":
        if (
            self.started_date is not None
            and self.finished_date is not None
            and self.finished_date < self.started_date
        ):
            raise ValueError("finished_date cannot be before started_date")
        return self


class RatingRequest(BaseModel):
    """Payload for POST /rankings/flows/{flow_id}/rating."""

    rating: Rating


class JudgmentRequest(BaseModel):
    """Payload for POST /rankings/flows/{flow_id}/judgments."""

    judgment: Judgment


class StatusChangeRequest(BaseModel):
    """Payload for PATCH /rankings/user-books/{user_book_id}/status."""

    status: ShelfStatus

    @field_validator("status")
    @classmethod
    def not_read(cls, v: ShelfStatus) -> ShelfStatus:
        if v is ShelfStatus.read:
            raise ValueError("Use a ranking flow to mark a book as read")
        return v


class ReorderRequest(BaseModel):
    """Payload for PUT /rankings/tiers/{rating}/order."""

    user_book_ids: list[UUID]

    @field_validator("user_book_ids")
    @classmethod
    def no_duplicates(cls, v: list[UUID]) -> list[UUID]:
        if len(set(v)) != len(v):
            raise ValueError("user_book_ids must not repeat")
        return v


class ComparisonProbeOut(BaseModel):
    candidate_user_book_id: UUID
    existing_user_book_id: UUID
    existing_title: str | None
    existing_rank: int


class FlowResponse(BaseModel):
    id: UUID
    user_book_id: UUID | None
    state: FlowState
    rating: Rating | None
    probe: ComparisonProbeOut | None
    comparisons_made: int
    resolved_rank: int | None
    rank_score: float | None
    created_at: datetime
    updated_at: datetime


class RankedBookItem(BaseModel):
    """Single item in the ranked-list response."""

    user_book_id: UUID
    book_id: UUID
    title: str
    authors: list[str]
    rating: Rating
    rank: int
    rank_score: float


class ShelfEntryResponse(BaseModel):
    id: UUID
    book_id: UUID
    status: ShelfStatus
    rating: Rating | None
    rank_score: float | None
    notes: str | None

    model_config = ConfigDict(from_attributes=True)


class TierScoreItem(BaseModel):
    user_book_id: UUID
    rank_score: float


class TierOrderResponse(BaseModel):
    rating: Rating
    items: list[TierScoreItem]


class HealResponse(BaseModel):
    rating: Rating
    healed: bool
    problems: list[str]
