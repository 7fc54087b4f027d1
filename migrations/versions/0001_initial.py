"""Initial schema: chat sessions and messages"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "yah_chat_sessions",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("ride_id", sa.String, nullable=False),
        sa.Column("customer_id", sa.String, nullable=False),
        sa.Column("driver_id", sa.String, nullable=True),
        sa.Column("room_name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_yah_chat_sessions_ride_id", "yah_chat_sessions", ["ride_id"])
    op.create_index("ix_yah_chat_sessions_customer_id", "yah_chat_sessions", ["customer_id"])
    op.create_index("ix_yah_chat_sessions_is_active", "yah_chat_sessions", ["is_active"])

    op.create_table(
        "yah_messages",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("ride_id", sa.String, nullable=False),
        sa.Column("chat_session_id", sa.String, sa.ForeignKey("yah_chat_sessions.id"), nullable=True),
        sa.Column("sender_by", sa.String, nullable=False),
        sa.Column("sender_role", sa.String(20), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_yah_messages_ride_id", "yah_messages", ["ride_id"])
    op.create_index("ix_yah_messages_chat_session_id", "yah_messages", ["chat_session_id"])
    op.create_index("ix_yah_messages_created_at", "yah_messages", ["created_at"])


def downgrade() -> None:
    op.drop_table("yah_messages")
    op.drop_table("yah_chat_sessions")
