"""Initial schema: analyses, messages, processed contents

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Check if tables already exist and skip if so
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "analyses" in existing_tables:
        return

    # Create analyses table
    op.create_table(
        "analyses",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_query_text", sa.Text),
        sa.Column("user_image_filename", sa.String(255)),
        sa.Column("report_type", sa.String(100), nullable=False),
        sa.Column("model_id_used", sa.String(255), nullable=False),
        sa.Column("generated_report_text", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.CheckConstraint(
            "report_type IN ('FULL_CHECK', 'CONTEXT_REPORT', 'COMMUNITY_NOTE')",
            name="ck_analyses_report_type",
        ),
    )
    op.create_index("idx_analyses_created_at", "analyses", ["created_at"])

    # Create messages table
    op.create_table(
        "messages",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("analysis_id", UUID(as_uuid=True), sa.ForeignKey("analyses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sender_type", sa.String(50), nullable=False),
        sa.Column("message_text", sa.Text, nullable=False),
        sa.Column("model_id_used", sa.String(255)),
        sa.Column("grounding_sources", JSONB),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("timestamp", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("sender_type IN ('user', 'assistant')", name="ck_messages_sender_type"),
        sa.UniqueConstraint("analysis_id", "sequence"),
    )
    op.create_index("idx_messages_analysis_order", "messages", ["analysis_id", "timestamp", "sequence"])

    # Create processed_contents table
    op.create_table(
        "processed_contents",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("content_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("source_url", sa.Text, nullable=False),
        sa.Column("extracted_title", sa.Text),
        sa.Column("extracted_content", sa.Text),
        sa.Column("processed_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("last_fetched_at", sa.DateTime, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("processed_contents")
    op.drop_index("idx_messages_analysis_order", table_name="messages")
    op.drop_table("messages")
    op.drop_index("idx_analyses_created_at", table_name="analyses")
    op.drop_table("analyses")
