"""Create execution_contexts table for persisted execution state."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op as alembic_op  # type: ignore[import-untyped]

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the execution_contexts table and its lookup indexes."""

    alembic_op.create_table(
        "execution_contexts",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("parent_id", sa.String(length=64), nullable=True),
        sa.Column("mapping_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("records_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Float(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    alembic_op.create_index("ix_execution_contexts_parent_id", "execution_contexts", ["parent_id"])
    alembic_op.create_index("ix_execution_contexts_mapping_id", "execution_contexts", ["mapping_id"])
    alembic_op.create_index("ix_execution_contexts_status", "execution_contexts", ["status"])


def downgrade() -> None:
    """Drop execution_contexts table and related indexes."""

    alembic_op.drop_index("ix_execution_contexts_status", table_name="execution_contexts")
    alembic_op.drop_index("ix_execution_contexts_mapping_id", table_name="execution_contexts")
    alembic_op.drop_index("ix_execution_contexts_parent_id", table_name="execution_contexts")
    alembic_op.drop_table("execution_contexts")
