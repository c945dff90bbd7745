"""Initial schema — books, user_books, ranking_flows, book_comparisons

Revision ID: 0001
Revises: —
Create Date: 2026-10-19 00:00:00
"""
from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from alembic import op

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── Extensions ────────────────────────────────────────────────────────────
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    # ── books ─────────────────────────────────────────────────────────────────
    op.create_table(
        "books",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("authors", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_books_title", "books", ["title"])

    # ── user_books ────────────────────────────────────────────────────────────
    # updated_at is maintained by the application, not a trigger: rank_score
    # rewrites during redistribution must not look like user edits.
    op.create_table(
        "user_books",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("book_id", UUID(as_uuid=True),
                  sa.ForeignKey("books.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="want_to_read"),
        sa.Column("rating", sa.String(32), nullable=True),
        sa.Column("rank_score", sa.Float, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("started_date", sa.Date, nullable=True),
        sa.Column("finished_date", sa.Date, nullable=True),
        sa.Column("custom_labels", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True),
                  nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("user_id", "book_id", name="uq_user_book"),
        sa.CheckConstraint(
            "status IN ('read', 'currently_reading', 'want_to_read', 'none')",
            name="chk_user_books_status",
        ),
        sa.CheckConstraint(
            "rating IS NULL OR rating IN ('liked', 'fine', 'disliked')",
            name="chk_user_books_rating",
        ),
        sa.CheckConstraint(
            "rank_score IS NULL OR (rank_score >= 0.0 AND rank_score <= 10.0)",
            name="chk_rank_score_0_10",
        ),
        sa.CheckConstraint(
            "rank_score IS NULL OR (status = 'read' AND rating IS NOT NULL)",
            name="chk_rank_score_requires_read_rating",
        ),
        sa.CheckConstraint(
            """
            rank_score IS NULL OR
            (rating = 'liked'    AND rank_score > 6.5 AND rank_score <= 10.0) OR
            (rating = 'fine'     AND rank_score > 3.5 AND rank_score <= 6.5) OR
            (rating = 'disliked' AND rank_score >= 0.0 AND rank_score <= 3.5)
            """,
            name="chk_rank_score_by_rating",
        ),
    )
    op.create_index("ix_user_books_user_id", "user_books", ["user_id"])
    op.create_index("ix_user_books_book_id", "user_books", ["book_id"])
    # Tier scan: one user's read books of one rating, best first
    op.execute("""
        CREATE INDEX idx_user_books_user_rating_score
          ON user_books (user_id, rating, rank_score DESC)
          WHERE status = 'read'
    """)

    # ── ranking_flows ─────────────────────────────────────────────────────────
    op.create_table(
        "ranking_flows",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_book_id", UUID(as_uuid=True),
                  sa.ForeignKey("user_books.id", ondelete="SET NULL"), nullable=True),
        sa.Column("state", sa.String(32), nullable=False, server_default="pending_rating"),
        sa.Column("rating", sa.String(32), nullable=True),
        sa.Column("vacated_rating", sa.String(32), nullable=True),
        sa.Column("snapshot", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("session_state", JSONB, nullable=True),
        sa.Column("resolved_rank", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True),
                  nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "state IN ('pending_rating', 'pending_comparison', 'committed', 'aborted')",
            name="chk_ranking_flows_state",
        ),
        sa.CheckConstraint(
            "resolved_rank IS NULL OR resolved_rank >= 1",
            name="chk_resolved_rank_positive",
        ),
    )
    op.create_index("ix_ranking_flows_user_id", "ranking_flows", ["user_id"])
    op.create_index("ix_ranking_flows_user_book_id", "ranking_flows", ["user_book_id"])
    op.create_index("idx_ranking_flows_user_state", "ranking_flows", ["user_id", "state"])
    # At most one live flow per shelf entry
    op.execute("""
        CREATE UNIQUE INDEX uq_ranking_flows_active_book
          ON ranking_flows (user_book_id)
          WHERE state IN ('pending_rating', 'pending_comparison')
    """)

    # ── book_comparisons ──────────────────────────────────────────────────────
    op.create_table(
        "book_comparisons",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("flow_id", UUID(as_uuid=True),
                  sa.ForeignKey("ranking_flows.id", ondelete="SET NULL"), nullable=True),
        sa.Column("winner_user_book_id", UUID(as_uuid=True),
                  sa.ForeignKey("user_books.id", ondelete="CASCADE"), nullable=False),
        sa.Column("loser_user_book_id", UUID(as_uuid=True),
                  sa.ForeignKey("user_books.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "winner_user_book_id <> loser_user_book_id",
            name="chk_comparison_distinct_books",
        ),
    )
    op.create_index("ix_book_comparisons_user_id", "book_comparisons", ["user_id"])


def downgrade() -> None:
    op.drop_table("book_comparisons")
    op.drop_table("ranking_flows")
    op.drop_table("user_books")
    op.drop_table("books")
