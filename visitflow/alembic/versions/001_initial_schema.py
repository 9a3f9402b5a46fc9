"""Initial schema - catalog, leads, WhatsApp conversations/messages, visits.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Staff
    op.create_table(
        "profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column("full_name", sa.String(150), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("role", sa.String(20), nullable=False, server_default="attendant"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_profiles_role_active", "profiles", ["role", "is_active"])

    # Property catalog
    op.create_table(
        "properties",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(30), nullable=False, unique=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("property_type", sa.String(30), server_default="apartment"),
        sa.Column("transaction_type", sa.String(20), server_default="sale"),
        sa.Column("status", sa.String(20), nullable=False, server_default="available"),
        sa.Column("address_street", sa.String(255)),
        sa.Column("address_number", sa.String(20)),
        sa.Column("address_neighborhood", sa.String(120), nullable=False),
        sa.Column("address_city", sa.String(120), nullable=False),
        sa.Column("address_state", sa.String(2), nullable=False, server_default="SP"),
        sa.Column("address_zipcode", sa.String(10)),
        sa.Column("bedrooms", sa.Integer, server_default="0"),
        sa.Column("bathrooms", sa.Integer, server_default="0"),
        sa.Column("parking_spots", sa.Integer, server_default="0"),
        sa.Column("area_total", sa.Numeric(10, 2)),
        sa.Column("sale_price", sa.Numeric(15, 2)),
        sa.Column("rent_price", sa.Numeric(15, 2)),
        sa.Column("condominium_fee", sa.Numeric(15, 2)),
        sa.Column("cover_image_url", sa.Text),
        sa.Column("images", postgresql.JSONB, server_default="[]"),
        sa.Column("is_featured", sa.Boolean, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_properties_status", "properties", ["status"])
    op.create_index("ix_properties_neighborhood", "properties", ["address_neighborhood"])

    # Leads
    op.create_table(
        "leads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("phone", sa.String(20), nullable=False, unique=True),
        sa.Column("name", sa.String(150), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("avatar_url", sa.Text),
        sa.Column("source", sa.String(30), nullable=False, server_default="whatsapp"),
        sa.Column("status", sa.String(30), nullable=False, server_default="new"),
        sa.Column("priority", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("broker_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("profiles.id")),
        sa.Column("notes", sa.Text),
        sa.Column("preferred_property_type", sa.String(30)),
        sa.Column("preferred_transaction", sa.String(20)),
        sa.Column("min_budget", sa.Numeric(15, 2)),
        sa.Column("max_budget", sa.Numeric(15, 2)),
        sa.Column("preferred_neighborhoods", postgresql.JSONB, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_leads_broker_id", "leads", ["broker_id"])
    op.create_index("ix_leads_status", "leads", ["status"])

    # WhatsApp conversations (with the scheduling slot set)
    op.create_table(
        "whatsapp_conversations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("whatsapp_id", sa.String(64), nullable=False, unique=True),
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("display_name", sa.String(150)),
        sa.Column(
            "lead_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("leads.id", ondelete="CASCADE"),
        ),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("automation_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("human_takeover_at", sa.DateTime(timezone=True)),
        sa.Column("needs_human_followup", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_message_at", sa.DateTime(timezone=True)),
        sa.Column("last_read_at", sa.DateTime(timezone=True)),
        sa.Column("pending_visit_step", sa.String(30), nullable=False, server_default="none"),
        sa.Column("pending_visit_property_id", postgresql.UUID(as_uuid=True)),
        sa.Column("pending_visit_scheduled_at", sa.DateTime(timezone=True)),
        sa.Column("pending_visit_id", postgresql.UUID(as_uuid=True)),
        sa.Column("pending_visit_candidates", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "pending_visit_step IN ('none', 'awaiting_property', 'awaiting_datetime', "
            "'awaiting_candidate_choice', 'awaiting_confirmation')",
            name="ck_whatsapp_conversations_pending_visit_step",
        ),
    )
    op.create_index("ix_whatsapp_conversations_phone", "whatsapp_conversations", ["phone"])
    op.create_index("ix_whatsapp_conversations_lead_id", "whatsapp_conversations", ["lead_id"])
    op.create_index(
        "ix_whatsapp_conversations_last_message_at", "whatsapp_conversations", ["last_message_at"],
    )
    op.create_index(
        "ix_whatsapp_conversations_pending_visit_step", "whatsapp_conversations", ["pending_visit_step"],
    )

    # WhatsApp messages
    op.create_table(
        "whatsapp_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "conversation_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("whatsapp_conversations.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("message_id", sa.String(100), unique=True),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("content", sa.Text),
        sa.Column("media_type", sa.String(20)),
        sa.Column("media_url", sa.Text),
        sa.Column("status", sa.String(20), server_default="sent"),
        sa.Column("ai_processed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("ai_response", postgresql.JSONB, server_default="{}"),
        sa.Column("transcription", sa.Text),
        sa.Column("transcription_status", sa.String(10)),
        sa.Column("transcription_error", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_whatsapp_messages_conversation_id", "whatsapp_messages", ["conversation_id"])
    op.create_index("ix_whatsapp_messages_created_at", "whatsapp_messages", ["created_at"])
    op.create_index(
        "ix_whatsapp_messages_transcription_status", "whatsapp_messages", ["transcription_status"],
    )

    # Visits
    op.create_table(
        "visits",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "lead_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "property_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("properties.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("broker_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled"),
        sa.Column("notes", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_visits_scheduled_at", "visits", ["scheduled_at"])
    op.create_index("ix_visits_broker_id", "visits", ["broker_id"])
    op.create_index("ix_visits_status", "visits", ["status"])


def downgrade() -> None:
    op.drop_table("visits")
    op.drop_table("whatsapp_messages")
    op.drop_table("whatsapp_conversations")
    op.drop_table("leads")
    op.drop_table("properties")
    op.drop_table("profiles")
