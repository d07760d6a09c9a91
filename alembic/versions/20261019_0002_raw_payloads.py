"""Archive of raw feed payloads for audit and replay.

Revision ID: 002_raw_payloads
Revises: 001_initial
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002_raw_payloads"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "raw_payloads",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("source", sa.String(500), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("replay_count", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_raw_payloads_status_received", "raw_payloads", ["status", "received_at"])
    op.create_index("idx_raw_payloads_received", "raw_payloads", ["received_at"])


def downgrade() -> None:
    op.drop_index("idx_raw_payloads_received", table_name="raw_payloads")
    op.drop_index("idx_raw_payloads_status_received", table_name="raw_payloads")
    op.drop_table("raw_payloads")
