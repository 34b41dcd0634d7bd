"""leaderboard index on chat_tokens (points, total_tokens_spent)

Revision ID: 002_leaderboard_index
Revises: 001_chat_tokens
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002_leaderboard_index"
down_revision: Union[str, None] = "001_chat_tokens"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

INDEX_NAME = "ix_chat_tokens_leaderboard"


def upgrade() -> None:
    bind = op.get_bind()
    existing = {ix["name"] for ix in sa.inspect(bind).get_indexes("chat_tokens")}
    if INDEX_NAME not in existing:
        op.create_index(INDEX_NAME, "chat_tokens", ["points", "total_tokens_spent"])


def downgrade() -> None:
    op.drop_index(INDEX_NAME, table_name="chat_tokens")
