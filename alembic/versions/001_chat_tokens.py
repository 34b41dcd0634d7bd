"""chat_tokens ledger table and tokens mint table

Revision ID: 001_chat_tokens
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_chat_tokens"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "chat_tokens",
        sa.Column("wallet_address", sa.String(255), primary_key=True),
        sa.Column("balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_tokens_spent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )

    # Owned by the mint flow; created here only when it is not already present.
    bind = op.get_bind()
    if not sa.inspect(bind).has_table("tokens"):
        op.create_table(
            "tokens",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("wallet_address", sa.String(255), nullable=False),
            sa.Column("token_id", sa.Integer, nullable=True),
            sa.Column("status", sa.String(50), nullable=False, server_default="pending"),
            sa.Column("created_at", sa.DateTime, nullable=False),
        )
        op.create_index("ix_tokens_wallet_address", "tokens", ["wallet_address"])


def downgrade() -> None:
    op.drop_table("chat_tokens")
