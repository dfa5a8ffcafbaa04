"""payments_fulfillment_schema

Catalog, purchase, webhook bookkeeping and audit tables for payment intent
issuance and entitlement fulfillment.

- Money columns are BIGINT cents
- stripe_payment_intent_id / barcode / pickup_code are UNIQUE (nullable)
- webhook_events.id is the Stripe event id (atomic admission via PK)
- RLS enabled on every table (server-side owner role bypasses it)

Revision ID: 3f1c2a7e9b10
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c2a7e9b10'
down_revision = None
branch_labels = None
depends_on = None

_TS = sa.TIMESTAMP(timezone=True)

_TABLES = (
    "events",
    "poker_tourneys",
    "settings",
    "dining_vendors",
    "menu_items",
    "orders",
    "order_items",
    "event_tickets",
    "poker_entries",
    "chip_vouchers",
    "webhook_events",
    "audit_logs",
)


def upgrade() -> None:
    # ====================================================================
    # Catalog
    # ====================================================================
    op.create_table(
        "events",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("title", sa.TEXT(), nullable=False),
        sa.Column("price", sa.BIGINT(), nullable=False),
        sa.Column("fee", sa.BIGINT(), nullable=False, server_default="0"),
        sa.Column("inventory", sa.BIGINT(), nullable=False, server_default="0"),
        sa.Column("onsale", sa.BOOLEAN(), nullable=False, server_default=sa.true()),
        sa.Column("starts_at", _TS, nullable=True),
    )
    op.create_table(
        "poker_tourneys",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("name", sa.TEXT(), nullable=False),
        sa.Column("buyin", sa.BIGINT(), nullable=False),
        sa.Column("fee", sa.BIGINT(), nullable=False, server_default="0"),
        sa.Column("seats_total", sa.BIGINT(), nullable=False, server_default="0"),
        sa.Column("seats_left", sa.BIGINT(), nullable=False, server_default="0"),
        sa.Column("active", sa.BOOLEAN(), nullable=False, server_default=sa.true()),
        sa.Column("starts_at", _TS, nullable=True),
    )
    op.create_table(
        "settings",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("min_chip_voucher", sa.BIGINT(), nullable=False, server_default="2000"),
        sa.Column("max_chip_voucher", sa.BIGINT(), nullable=False, server_default="100000"),
    )
    op.create_table(
        "dining_vendors",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("name", sa.TEXT(), nullable=False),
    )
    op.create_table(
        "menu_items",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("vendor_id", sa.TEXT(), nullable=False),
        sa.Column("name", sa.TEXT(), nullable=False),
        sa.Column("price", sa.BIGINT(), nullable=False),
        sa.Column("is_active", sa.BOOLEAN(), nullable=False, server_default=sa.true()),
    )
    op.create_index("idx_menu_items_vendor", "menu_items", ["vendor_id"])

    # ====================================================================
    # Purchases
    # ====================================================================
    op.create_table(
        "orders",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("user_id", sa.TEXT(), nullable=False),
        sa.Column("vendor_id", sa.TEXT(), nullable=False),
        sa.Column("subtotal", sa.BIGINT(), nullable=False, server_default="0"),
        sa.Column("tax", sa.BIGINT(), nullable=False, server_default="0"),
        sa.Column("tip", sa.BIGINT(), nullable=False, server_default="0"),
        sa.Column("fee", sa.BIGINT(), nullable=False, server_default="0"),
        sa.Column("total", sa.BIGINT(), nullable=False, server_default="0"),
        sa.Column("status", sa.TEXT(), nullable=False, server_default="cart"),
        sa.Column("stripe_payment_intent_id", sa.TEXT(), nullable=True, unique=True),
        sa.Column("pickup_code", sa.TEXT(), nullable=True, unique=True),
        sa.Column("pickup_eta", _TS, nullable=True),
        sa.Column("picked_up_at", _TS, nullable=True),
        sa.Column("picked_up_by_staff_id", sa.TEXT(), nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_orders_user_status", "orders", ["user_id", "status"])
    op.create_index("idx_orders_vendor_status", "orders", ["vendor_id", "status"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("order_id", sa.TEXT(), nullable=False),
        sa.Column("menu_item_id", sa.TEXT(), nullable=False),
        sa.Column("qty", sa.BIGINT(), nullable=False, server_default="1"),
        sa.Column("name_cache", sa.TEXT(), nullable=True),
    )
    op.create_index("idx_order_items_order", "order_items", ["order_id"])

    op.create_table(
        "event_tickets",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("user_id", sa.TEXT(), nullable=False),
        sa.Column("event_id", sa.TEXT(), nullable=False),
        sa.Column("qty", sa.BIGINT(), nullable=False, server_default="1"),
        sa.Column("amount", sa.BIGINT(), nullable=False),
        sa.Column("status", sa.TEXT(), nullable=False, server_default="pending"),
        sa.Column("stripe_payment_intent_id", sa.TEXT(), nullable=True, unique=True),
        sa.Column("barcode", sa.TEXT(), nullable=True, unique=True),
        sa.Column("issued_at", _TS, nullable=True),
        sa.Column("redeemed_at", _TS, nullable=True),
        sa.Column("redeemed_by_staff_id", sa.TEXT(), nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_event_tickets_user", "event_tickets", ["user_id"])

    op.create_table(
        "poker_entries",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("user_id", sa.TEXT(), nullable=False),
        sa.Column("tourney_id", sa.TEXT(), nullable=False),
        sa.Column("amount", sa.BIGINT(), nullable=False),
        sa.Column("status", sa.TEXT(), nullable=False, server_default="pending"),
        sa.Column("stripe_payment_intent_id", sa.TEXT(), nullable=True, unique=True),
        sa.Column("barcode", sa.TEXT(), nullable=True, unique=True),
        sa.Column("issued_at", _TS, nullable=True),
        sa.Column("will_call_window_start", _TS, nullable=True),
        sa.Column("will_call_window_end", _TS, nullable=True),
        sa.Column("redeemed_at", _TS, nullable=True),
        sa.Column("redeemed_by_staff_id", sa.TEXT(), nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_poker_entries_user", "poker_entries", ["user_id"])

    op.create_table(
        "chip_vouchers",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("user_id", sa.TEXT(), nullable=False),
        sa.Column("amount", sa.BIGINT(), nullable=False),
        sa.Column("fee", sa.BIGINT(), nullable=False, server_default="0"),
        sa.Column("status", sa.TEXT(), nullable=False, server_default="pending"),
        sa.Column("stripe_payment_intent_id", sa.TEXT(), nullable=True, unique=True),
        sa.Column("barcode", sa.TEXT(), nullable=True, unique=True),
        sa.Column("issued_at", _TS, nullable=True),
        sa.Column("redeem_window_start", _TS, nullable=True),
        sa.Column("redeem_window_end", _TS, nullable=True),
        sa.Column("redeemed_at", _TS, nullable=True),
        sa.Column("redeemed_by_staff_id", sa.TEXT(), nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_chip_vouchers_user", "chip_vouchers", ["user_id"])

    # ====================================================================
    # Webhook bookkeeping / audit
    # ====================================================================
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("event_type", sa.TEXT(), nullable=False),
        sa.Column("processed", sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.TEXT(), nullable=False, server_default="processing"),
        sa.Column("received_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.Column("last_seen_at", _TS, nullable=True),
        sa.Column("payload_hash", sa.TEXT(), nullable=True),
    )
    op.create_index("idx_webhook_events_status", "webhook_events", ["status"])
    op.create_index("idx_webhook_events_received", "webhook_events", ["received_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.TEXT(), primary_key=True),
        sa.Column("event_type", sa.TEXT(), nullable=False),
        sa.Column("resource_type", sa.TEXT(), nullable=False),
        sa.Column("resource_id", sa.TEXT(), nullable=False),
        sa.Column("actor", sa.TEXT(), nullable=False),
        sa.Column("staff_id", sa.TEXT(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_audit_logs_resource", "audit_logs", ["resource_type", "resource_id"])
    op.create_index("idx_audit_logs_created", "audit_logs", ["created_at"])

    # RLS default: DENY (no policies added here; server-side owner role bypasses)
    for table in _TABLES:
        op.execute(f"ALTER TABLE public.{table} ENABLE ROW LEVEL SECURITY;")


def downgrade() -> None:
    for table in reversed(_TABLES):
        op.drop_table(table)
