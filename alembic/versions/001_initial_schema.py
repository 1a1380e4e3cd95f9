"""Initial schema: workspace members, credentials, token usage, and credit ledger.

Revision ID: 001
Revises:
Create Date: 2026-10-19

Changes:
- Create workspace_users with the member credit balance
- Create credentials with flat and per-model billing configuration
- Create token_usage_executions and token_usage_credentials
- Create workspace_credit_transactions with the (workspace_id, user_id, created_at) index
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

TOKEN_COUNTERS = (
    "input_tokens",
    "output_tokens",
    "total_tokens",
    "cache_read_tokens",
    "cache_write_tokens",
    "reasoning_tokens",
    "accepted_prediction_tokens",
    "rejected_prediction_tokens",
    "audio_input_tokens",
    "audio_output_tokens",
)


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        sa.dialects.postgresql.UUID(as_uuid=False),
        server_default=sa.text("gen_random_uuid()"),
        primary_key=True,
    )


def _timestamp_column(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def _counter_columns() -> list[sa.Column]:
    return [
        sa.Column(name, sa.Integer(), server_default="0", nullable=False)
        for name in TOKEN_COUNTERS
    ]


def upgrade() -> None:
    """Create all tokenledger tables."""
    # 1. workspace_users
    op.create_table(
        "workspace_users",
        _id_column(),
        sa.Column("workspace_id", sa.dialects.postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("user_id", sa.dialects.postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("role", sa.String(50), server_default="member", nullable=False),
        sa.Column("credit", sa.Integer(), server_default="0", nullable=False),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        sa.UniqueConstraint("workspace_id", "user_id", name="uq_workspace_user"),
    )

    # 2. credentials
    op.create_table(
        "credentials",
        _id_column(),
        sa.Column("workspace_id", sa.dialects.postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("credential_name", sa.String(100), nullable=False),
        sa.Column(
            "credit_consumption_multiplier", sa.Float(), server_default="1", nullable=False
        ),
        sa.Column("credit_consumption_multiplier_by_model", sa.Text(), nullable=True),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
    )

    # 3. token_usage_executions
    op.create_table(
        "token_usage_executions",
        _id_column(),
        sa.Column("workspace_id", sa.dialects.postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("organization_id", sa.dialects.postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("user_id", sa.dialects.postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("flow_type", sa.String(32), nullable=False),
        sa.Column("flow_id", sa.String(255), nullable=True),
        sa.Column("execution_id", sa.String(255), nullable=True),
        sa.Column("chat_id", sa.String(255), nullable=True),
        sa.Column("chat_message_id", sa.String(255), nullable=True),
        sa.Column("session_id", sa.String(255), nullable=True),
        *_counter_columns(),
        sa.Column("usage_breakdown", sa.Text(), nullable=True),
        sa.Column("model_breakdown", sa.Text(), nullable=True),
        _timestamp_column("created_at"),
    )
    op.create_index(
        "ix_token_usage_executions_workspace_id", "token_usage_executions", ["workspace_id"]
    )
    op.create_index(
        "ix_token_usage_executions_organization_id", "token_usage_executions", ["organization_id"]
    )

    # 4. token_usage_credentials
    op.create_table(
        "token_usage_credentials",
        _id_column(),
        sa.Column(
            "usage_execution_id",
            sa.dialects.postgresql.UUID(as_uuid=False),
            sa.ForeignKey("token_usage_executions.id"),
            nullable=False,
        ),
        sa.Column("workspace_id", sa.dialects.postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("organization_id", sa.dialects.postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("user_id", sa.dialects.postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("credential_id", sa.String(255), nullable=True),
        sa.Column("credential_name", sa.String(255), nullable=True),
        sa.Column("model", sa.String(255), nullable=True),
        sa.Column("usage_count", sa.Integer(), server_default="0", nullable=False),
        *_counter_columns(),
        sa.Column("usage_breakdown", sa.Text(), nullable=True),
        _timestamp_column("created_at"),
    )
    op.create_index(
        "ix_token_usage_credentials_usage_execution_id",
        "token_usage_credentials",
        ["usage_execution_id"],
    )
    op.create_index(
        "ix_token_usage_credentials_organization_id",
        "token_usage_credentials",
        ["organization_id"],
    )

    # 5. workspace_credit_transactions
    op.create_table(
        "workspace_credit_transactions",
        _id_column(),
        sa.Column("workspace_id", sa.dialects.postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("user_id", sa.dialects.postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("credential_id", sa.String(255), nullable=True),
        sa.Column("credential_name", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _timestamp_column("created_at"),
    )
    op.create_index(
        "ix_workspace_credit_transactions_workspace_user_created",
        "workspace_credit_transactions",
        ["workspace_id", "user_id", "created_at"],
    )


def downgrade() -> None:
    """Drop all tokenledger tables in reverse dependency order."""
    op.drop_index(
        "ix_workspace_credit_transactions_workspace_user_created",
        table_name="workspace_credit_transactions",
    )
    op.drop_table("workspace_credit_transactions")
    op.drop_index("ix_token_usage_credentials_organization_id", table_name="token_usage_credentials")
    op.drop_index(
        "ix_token_usage_credentials_usage_execution_id", table_name="token_usage_credentials"
    )
    op.drop_table("token_usage_credentials")
    op.drop_index(
        "ix_token_usage_executions_organization_id", table_name="token_usage_executions"
    )
    op.drop_index("ix_token_usage_executions_workspace_id", table_name="token_usage_executions")
    op.drop_table("token_usage_executions")
    op.drop_table("credentials")
    op.drop_table("workspace_users")
