"""Create inbox conversation/agent/contact/message tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "inbox_conversations",
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("contact_id", sa.String(length=64), nullable=True),
        sa.Column("agent_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="normal"),
        sa.Column("is_pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_new", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("conversation_id"),
    )
    op.create_index("ix_inbox_conversations_agent_id", "inbox_conversations", ["agent_id"], unique=False)
    op.create_index("ix_inbox_conversations_status", "inbox_conversations", ["status"], unique=False)

    op.create_table(
        "inbox_agents",
        sa.Column("agent_id", sa.String(length=128), nullable=False),
        sa.Column("username", sa.String(length=256), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="agent"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("agent_id"),
    )

    op.create_table(
        "inbox_contacts",
        sa.Column("contact_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("phone_number", sa.String(length=64), nullable=False),
        sa.Column("phone_digits", sa.String(length=32), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("avatar", sa.Text(), nullable=True),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("contact_id"),
    )
    op.create_index("ix_inbox_contacts_phone_digits", "inbox_contacts", ["phone_digits"], unique=False)

    op.create_table(
        "inbox_messages",
        sa.Column("message_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("sender_id", sa.String(length=128), nullable=False),
        sa.Column("sender_type", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("message_type", sa.String(length=32), nullable=False, server_default="text"),
        sa.Column("provider_message_sid", sa.String(length=64), nullable=True),
        sa.Column("delivery_status", sa.String(length=16), nullable=True),
        sa.Column("media_json", sa.Text(), nullable=True),
        sa.Column("chat_service_sid", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["conversation_id"], ["inbox_conversations.conversation_id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("message_id"),
        sa.UniqueConstraint("provider_message_sid"),
    )
    op.create_index("ix_inbox_messages_conversation_id", "inbox_messages", ["conversation_id"], unique=False)
    op.create_index("ix_inbox_messages_created_at", "inbox_messages", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_inbox_messages_created_at", table_name="inbox_messages")
    op.drop_index("ix_inbox_messages_conversation_id", table_name="inbox_messages")
    op.drop_table("inbox_messages")
    op.drop_index("ix_inbox_contacts_phone_digits", table_name="inbox_contacts")
    op.drop_table("inbox_contacts")
    op.drop_table("inbox_agents")
    op.drop_index("ix_inbox_conversations_status", table_name="inbox_conversations")
    op.drop_index("ix_inbox_conversations_agent_id", table_name="inbox_conversations")
    op.drop_table("inbox_conversations")
