"""
Comparison Session
──────────────────
Finds the rank of a book entering a tier by asking the reader a series of
"which did you prefer?" questions instead of asking for a number.

    not_started ──start()──▶ comparing ──record()…──▶ resolved
                                 │
                                 └──abort()──▶ aborted

The session bisects over insertion indexes [0, N] of the tier's members
(best first). Each judgment halves the interval, so a tier of N books
needs at most ceil(log2(N + 1)) comparisons. An empty tier resolves at
rank 1 without asking anything.

Judgments are provisional: nothing is written while the session runs.
The whole session serialises to a JSON dict (to_state / from_state) so a
flow can be resumed, or aborted cleanly, after an app restart.
"""
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from app.db.models import Rating


class Judgment(str, Enum):
    candidate_preferred = "candidate_preferred"
    existing_preferred = "existing_preferred"


class SessionState(str, Enum):
    not_started = "not_started"
    comparing = "comparing"
    resolved = "resolved"
    aborted = "aborted"


class ComparisonSessionError(Exception):
    """Raised when an operation does not fit the session's current state."""


class ComparisonRecord(BaseModel):
    existing_id: UUID
    judgment: Judgment


class ComparisonProbe(BaseModel):
    """The pair the reader must judge next."""

    candidate_id: UUID
    existing_id: UUID
    # 0-based index of existing_id in the tier, best first
    member_index: int
    comparisons_made: int


PresentComparison = Callable[[UUID, UUID], Awaitable[Judgment]]


class ComparisonSession(BaseModel):
    candidate_id: UUID
    rating: Rating
    # Tier members best first, never including the candidate
    member_ids: list[UUID] = Field(default_factory=list)
    state: SessionState = SessionState.not_started
    # Half-open bisection interval over insertion indexes
    low: int = 0
    high: int = 0
    history: list[ComparisonRecord] = Field(default_factory=list)

    @classmethod
    def for_candidate(
        cls,
        candidate_id: UUID,
        rating: Rating,
        member_ids: Sequence[UUID],
    ) -> "ComparisonSession":
        """
        Build a session against *member_ids*, dropping the candidate itself
        when it is already a member (re-ranking a book inside its own tier).
        """
        others = [member_id for member_id in member_ids if member_id != candidate_id]
        if len(set(others)) != len(others):
            raise ComparisonSessionError("tier member list contains duplicates")
        return cls(candidate_id=candidate_id, rating=rating, member_ids=others)

    # ── Transitions ───────────────────────────────────────────────────────────

    def start(self) -> ComparisonProbe | None:
        """Begin bisection. Returns the first probe, or None if already resolved."""
        if self.state is not SessionState.not_started:
            raise ComparisonSessionError(f"cannot start a session that is {self.state.value}")
        self.low = 0
        self.high = len(self.member_ids)
        self.state = SessionState.comparing
        self._settle()
        return self.current_probe()

    def record(self, judgment: Judgment | str) -> ComparisonProbe | None:
        """
        Apply one judgment against the current probe and narrow the interval.

        Returns the next probe, or None once the session has resolved.
        """
        if self.state is not SessionState.comparing:
            raise ComparisonSessionError(
                f"cannot record a judgment while the session is {self.state.value}"
            )
        judgment = Judgment(judgment)
        probe_index = self._probe_index()
        self.history.append(
            ComparisonRecord(existing_id=self.member_ids[probe_index], judgment=judgment)
        )
        if judgment is Judgment.candidate_preferred:
            self.high = probe_index
        else:
            self.low = probe_index + 1
        self._settle()
        return self.current_probe()

    def abort(self) -> None:
        if self.state is SessionState.resolved:
            raise ComparisonSessionError("cannot abort a resolved session")
        self.state = SessionState.aborted

    def _settle(self) -> None:
        if self.low >= self.high:
            self.state = SessionState.resolved

    def _probe_index(self) -> int:
        return (self.low + self.high) // 2

    # ── Queries ───────────────────────────────────────────────────────────────

    def current_probe(self) -> ComparisonProbe | None:
        if self.state is not SessionState.comparing:
            return None
        index = self._probe_index()
        return ComparisonProbe(
            candidate_id=self.candidate_id,
            existing_id=self.member_ids[index],
            member_index=index,
            comparisons_made=len(self.history),
        )

    @property
    def is_resolved(self) -> bool:
        return self.state is SessionState.resolved

    @property
    def insertion_index(self) -> int:
        """0-based position of the candidate in the tier after insertion."""
        if not self.is_resolved:
            raise ComparisonSessionError("session has not resolved yet")
        return self.low

    @property
    def resolved_rank(self) -> int:
        """1-indexed rank k in [1, N + 1]."""
        return self.insertion_index + 1

    def outcomes(self) -> list[tuple[UUID, UUID]]:
        """(winner_id, loser_id) pairs for every judgment made so far."""
        pairs = []
        for record in self.history:
            if record.judgment is Judgment.candidate_preferred:
                pairs.append((self.candidate_id, record.existing_id))
            else:
                pairs.append((record.existing_id, self.candidate_id))
        return pairs

    # ── Async driver ──────────────────────────────────────────────────────────

    async def run(self, present_comparison: PresentComparison) -> int:
        """
        Drive the session to resolution, awaiting *present_comparison* for
        every judgment. Returns the resolved rank.

        If the awaited prompt is cancelled or raises, the session is aborted
        and the error propagates; no judgment has any persisted effect.
        """
        if self.state is SessionState.not_started:
            self.start()
        try:
            while self.state is SessionState.comparing:
                probe = self.current_probe()
                judgment = await present_comparison(probe.candidate_id, probe.existing_id)
                self.record(judgment)
        except BaseException:
            if self.state is SessionState.comparing:
                self.abort()
            raise
        if self.state is not SessionState.resolved:
            raise ComparisonSessionError(f"session ended {self.state.value}")
        return self.resolved_rank

    # ── Serialisation ─────────────────────────────────────────────────────────

    def to_state(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_state(cls, state: dict) -> "ComparisonSession":
        return cls.model_validate(state)
