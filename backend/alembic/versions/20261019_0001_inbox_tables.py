"""Create inbox tables: operators, conversations, messages, automation state."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

_BIGINT = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "operators",
        sa.Column("id", _BIGINT, nullable=False, autoincrement=True),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.String(length=128), nullable=False),
        sa.Column("password_hash", sa.String(length=256), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("weight", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )

    op.create_table(
        "conversations",
        sa.Column("id", _BIGINT, nullable=False, autoincrement=True),
        sa.Column("wa_id", sa.String(length=64), nullable=False),
        sa.Column("contact_name", sa.Text(), nullable=True),
        sa.Column("is_pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("label_id", sa.Integer(), nullable=True),
        sa.Column("order_status", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("automation_disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("needs_human_attention", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("should_call", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("assigned_operator_id", _BIGINT, nullable=True),
        sa.Column("last_message", sa.Text(), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_follow_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["assigned_operator_id"], ["operators.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wa_id"),
    )
    op.create_index("ix_conversations_needs_human_attention", "conversations", ["needs_human_attention"], unique=False)
    op.create_index("ix_conversations_assigned_operator_id", "conversations", ["assigned_operator_id"], unique=False)
    op.create_index("ix_conversations_last_message_at", "conversations", ["last_message_at"], unique=False)
    op.create_index("ix_conversations_updated_at", "conversations", ["updated_at"], unique=False)

    op.create_table(
        "messages",
        sa.Column("id", _BIGINT, nullable=False, autoincrement=True),
        sa.Column("conversation_id", _BIGINT, nullable=False),
        sa.Column("wa_message_id", sa.String(length=256), nullable=True),
        sa.Column("direction", sa.String(length=8), nullable=False),
        sa.Column("sender_type", sa.String(length=16), nullable=False),
        sa.Column("content_type", sa.String(length=16), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("media_id", sa.String(length=256), nullable=True),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column("mime_type", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="received"),
        sa.Column("external_timestamp", sa.String(length=32), nullable=True),
        sa.Column("raw_payload_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wa_message_id"),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"], unique=False)
    op.create_index("ix_messages_created_at", "messages", ["created_at"], unique=False)

    op.create_table(
        "automation_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("instructions", sa.Text(), nullable=False, server_default=""),
        sa.Column("knowledge", sa.Text(), nullable=False, server_default=""),
        sa.Column("model", sa.String(length=128), nullable=False, server_default="gpt-4o-mini"),
        sa.Column("max_output_tokens", sa.Integer(), nullable=False, server_default="120"),
        sa.Column("temperature", sa.Float(), nullable=False, server_default="0.7"),
        sa.Column("history_depth", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("audio_replies_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("voice", sa.String(length=64), nullable=False, server_default="alloy"),
        sa.Column("speech_speed", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("learning_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("follow_up_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("follow_up_minutes", sa.Integer(), nullable=False, server_default="20"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "automation_logs",
        sa.Column("id", _BIGINT, nullable=False, autoincrement=True),
        sa.Column("conversation_id", _BIGINT, nullable=True),
        sa.Column("kind", sa.String(length=16), nullable=False, server_default="reply"),
        sa.Column("inbound_text", sa.Text(), nullable=True),
        sa.Column("reply_text", sa.Text(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_logs_conversation_id", "automation_logs", ["conversation_id"], unique=False)
    op.create_index("ix_automation_logs_created_at", "automation_logs", ["created_at"], unique=False)

    op.create_table(
        "learned_rules",
        sa.Column("id", _BIGINT, nullable=False, autoincrement=True),
        sa.Column("rule_text", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("source_conversation_id", _BIGINT, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("learned_rules")

    op.drop_index("ix_automation_logs_created_at", table_name="automation_logs")
    op.drop_index("ix_automation_logs_conversation_id", table_name="automation_logs")
    op.drop_table("automation_logs")

    op.drop_table("automation_settings")

    op.drop_index("ix_messages_created_at", table_name="messages")
    op.drop_index("ix_messages_conversation_id", table_name="messages")
    op.drop_table("messages")

    op.drop_index("ix_conversations_updated_at", table_name="conversations")
    op.drop_index("ix_conversations_last_message_at", table_name="conversations")
    op.drop_index("ix_conversations_assigned_operator_id", table_name="conversations")
    op.drop_index("ix_conversations_needs_human_attention", table_name="conversations")
    op.drop_table("conversations")

    op.drop_table("operators")
