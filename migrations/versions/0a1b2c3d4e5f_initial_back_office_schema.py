"""initial back office schema

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "0a1b2c3d4e5f"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=False),
        nullable=False,
        server_default=sa.func.current_timestamp(),
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=False),
        nullable=False,
        server_default=sa.func.current_timestamp(),
    )


def _line_item_columns() -> list[sa.Column]:
    return [
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Numeric(10, 3), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("vat_rate", sa.Numeric(5, 2), nullable=False, server_default="20"),
        _created_at(),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    def _has_index(table: str, name: str) -> bool:
        try:
            return any(ix.get("name") == name for ix in inspect(op.get_bind()).get_indexes(table))
        except Exception:
            return False

    def _ensure_indexes(table: str, indexes: tuple[tuple[str, list[str]], ...]) -> None:
        for idx_name, cols in indexes:
            if not _has_index(table, idx_name):
                op.create_index(idx_name, table, cols)

    # --- Accounts / RBAC / audit ---
    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("display_name", sa.String(128), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("last_login_at", sa.DateTime(timezone=False), nullable=True),
            _created_at(),
            sa.UniqueConstraint("email", name="uq_users_email"),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(64), nullable=False),
            sa.Column("name", sa.String(128), nullable=False),
            _created_at(),
            sa.UniqueConstraint("key", name="uq_roles_key"),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(128), nullable=False),
            sa.Column("name", sa.String(128), nullable=False),
            _created_at(),
            sa.UniqueConstraint("key", name="uq_permissions_key"),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("user_id", "role_id"),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("permission_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("role_id", "permission_id"),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            _created_at(),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        )
    _ensure_indexes(
        "audit_events",
        (
            ("idx_audit_events_created_at", ["created_at"]),
            ("idx_audit_events_entity", ["entity_type", "entity_id"]),
        ),
    )

    # --- Customers / messaging ---
    if "customers" not in existing_tables:
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("first_name", sa.String(128), nullable=False),
            sa.Column("last_name", sa.String(128), nullable=True),
            sa.Column("mobile_number", sa.String(32), nullable=True),
            sa.Column("email", sa.String(320), nullable=True),
            sa.Column("sms_opt_in", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("sms_delivery_failures", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("sms_deactivated_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("sms_deactivation_reason", sa.String(255), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.UniqueConstraint("mobile_number", name="uq_customers_mobile_number"),
        )
    _ensure_indexes(
        "customers",
        (
            ("idx_customers_last_name", ["last_name"]),
            ("idx_customers_email", ["email"]),
        ),
    )

    if "messages" not in existing_tables:
        op.create_table(
            "messages",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("channel", sa.String(16), nullable=False, server_default="sms"),
            sa.Column("customer_id", sa.Integer(), nullable=True),
            sa.Column("recipient", sa.String(320), nullable=False),
            sa.Column("subject", sa.String(255), nullable=True),
            sa.Column("body", sa.Text(), nullable=False),
            sa.Column("template_key", sa.String(64), nullable=True),
            sa.Column("dedupe_key", sa.String(80), nullable=True),
            sa.Column("related_entity_type", sa.String(64), nullable=True),
            sa.Column("related_entity_id", sa.String(64), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="queued"),
            sa.Column("status_reason", sa.String(255), nullable=True),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("provider_message_id", sa.String(128), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("scheduled_for", sa.DateTime(timezone=False), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=False), nullable=True),
            _created_at(),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        )
    _ensure_indexes(
        "messages",
        (
            ("idx_messages_status_scheduled", ["status", "scheduled_for"]),
            ("idx_messages_recipient_sent_at", ["recipient", "sent_at"]),
            ("idx_messages_dedupe_key", ["dedupe_key"]),
            ("idx_messages_related", ["related_entity_type", "related_entity_id"]),
        ),
    )

    if "message_templates" not in existing_tables:
        op.create_table(
            "message_templates",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(64), nullable=False),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("channel", sa.String(16), nullable=False, server_default="sms"),
            sa.Column("subject", sa.String(255), nullable=True),
            sa.Column("body", sa.Text(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _created_at(),
            _updated_at(),
            sa.UniqueConstraint("key", name="uq_message_templates_key"),
        )

    # --- Table bookings ---
    if "venue_tables" not in existing_tables:
        op.create_table(
            "venue_tables",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("table_number", sa.String(16), nullable=False),
            sa.Column("capacity", sa.Integer(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("notes", sa.Text(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.UniqueConstraint("table_number", name="uq_venue_tables_table_number"),
            sa.CheckConstraint("capacity >= 1 AND capacity <= 20", name="ck_venue_tables_capacity"),
        )

    if "booking_policies" not in existing_tables:
        op.create_table(
            "booking_policies",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("booking_type", sa.String(32), nullable=False),
            sa.Column("full_refund_hours", sa.Integer(), nullable=False, server_default="48"),
            sa.Column("partial_refund_hours", sa.Integer(), nullable=False, server_default="24"),
            sa.Column("partial_refund_percentage", sa.Integer(), nullable=False, server_default="50"),
            sa.Column("modification_allowed", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("cancellation_fee", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("max_party_size", sa.Integer(), nullable=False, server_default="20"),
            sa.Column("min_advance_hours", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("max_advance_days", sa.Integer(), nullable=False, server_default="56"),
            _updated_at(),
            sa.UniqueConstraint("booking_type", name="uq_booking_policies_booking_type"),
        )

    if "table_bookings" not in existing_tables:
        op.create_table(
            "table_bookings",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("booking_reference", sa.String(16), nullable=False),
            sa.Column("customer_id", sa.Integer(), nullable=False),
            sa.Column("booking_date", sa.Date(), nullable=False),
            sa.Column("booking_time", sa.Time(), nullable=False),
            sa.Column("party_size", sa.Integer(), nullable=False),
            sa.Column("booking_type", sa.String(32), nullable=False, server_default="regular"),
            sa.Column("status", sa.String(32), nullable=False, server_default="confirmed"),
            sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="120"),
            sa.Column("special_requirements", sa.Text(), nullable=True),
            sa.Column("dietary_requirements", sa.Text(), nullable=True),
            sa.Column("allergies", sa.Text(), nullable=True),
            sa.Column("celebration_type", sa.String(64), nullable=True),
            sa.Column("source", sa.String(32), nullable=False, server_default="phone"),
            sa.Column("confirmed_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("cancellation_reason", sa.Text(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("no_show_at", sa.DateTime(timezone=False), nullable=True),
            _created_at(),
            _updated_at(),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("booking_reference", name="uq_table_bookings_booking_reference"),
            sa.CheckConstraint("party_size >= 1", name="ck_table_bookings_party_size"),
        )
    _ensure_indexes(
        "table_bookings",
        (
            ("idx_table_bookings_date_status", ["booking_date", "status"]),
            ("idx_table_bookings_customer", ["customer_id"]),
        ),
    )

    if "table_booking_tables" not in existing_tables:
        op.create_table(
            "table_booking_tables",
            sa.Column("booking_id", sa.Integer(), nullable=False),
            sa.Column("table_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["booking_id"], ["table_bookings.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["table_id"], ["venue_tables.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("booking_id", "table_id"),
        )

    if "table_booking_items" not in existing_tables:
        op.create_table(
            "table_booking_items",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("booking_id", sa.Integer(), nullable=False),
            sa.Column("custom_item_name", sa.String(255), nullable=False),
            sa.Column("item_type", sa.String(16), nullable=False, server_default="main"),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("price_at_booking", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("guest_name", sa.String(128), nullable=True),
            sa.Column("special_requests", sa.Text(), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["booking_id"], ["table_bookings.id"], ondelete="CASCADE"),
        )

    if "table_booking_payments" not in existing_tables:
        op.create_table(
            "table_booking_payments",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("booking_id", sa.Integer(), nullable=False),
            sa.Column("amount", sa.Numeric(10, 2), nullable=False),
            sa.Column("payment_method", sa.String(32), nullable=False, server_default="card"),
            sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
            sa.Column("transaction_id", sa.String(128), nullable=True),
            sa.Column("refund_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("refund_reason", sa.String(255), nullable=True),
            sa.Column("paid_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("refunded_at", sa.DateTime(timezone=False), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["booking_id"], ["table_bookings.id"], ondelete="CASCADE"),
        )
    _ensure_indexes("table_booking_payments", (("idx_table_booking_payments_booking", ["booking_id"]),))

    if "table_booking_modifications" not in existing_tables:
        op.create_table(
            "table_booking_modifications",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("booking_id", sa.Integer(), nullable=False),
            sa.Column("modified_by_user_id", sa.Integer(), nullable=True),
            sa.Column("modification_type", sa.String(32), nullable=False),
            sa.Column("old_values_json", sa.Text(), nullable=True),
            sa.Column("new_values_json", sa.Text(), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["booking_id"], ["table_bookings.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["modified_by_user_id"], ["users.id"], ondelete="SET NULL"),
        )

    # --- Private bookings ---
    if "private_bookings" not in existing_tables:
        op.create_table(
            "private_bookings",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("customer_id", sa.Integer(), nullable=True),
            sa.Column("customer_first_name", sa.String(100), nullable=False),
            sa.Column("customer_last_name", sa.String(100), nullable=True),
            sa.Column("contact_phone", sa.String(32), nullable=True),
            sa.Column("contact_email", sa.String(255), nullable=True),
            sa.Column("event_date", sa.Date(), nullable=False),
            sa.Column("start_time", sa.Time(), nullable=False),
            sa.Column("end_time", sa.Time(), nullable=True),
            sa.Column("guest_count", sa.Integer(), nullable=True),
            sa.Column("event_type", sa.String(64), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
            sa.Column("deposit_amount", sa.Numeric(10, 2), nullable=False, server_default="250.00"),
            sa.Column("deposit_paid_date", sa.DateTime(timezone=False), nullable=True),
            sa.Column("deposit_payment_method", sa.String(32), nullable=True),
            sa.Column("balance_due_date", sa.Date(), nullable=True),
            sa.Column("final_payment_date", sa.DateTime(timezone=False), nullable=True),
            sa.Column("final_payment_method", sa.String(32), nullable=True),
            sa.Column("hold_expiry", sa.DateTime(timezone=False), nullable=True),
            sa.Column("discount_type", sa.String(16), nullable=True),
            sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("discount_reason", sa.String(255), nullable=True),
            sa.Column("customer_requests", sa.Text(), nullable=True),
            sa.Column("internal_notes", sa.Text(), nullable=True),
            sa.Column("cancellation_reason", sa.Text(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=False), nullable=True),
            _created_at(),
            _updated_at(),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.CheckConstraint("guest_count IS NULL OR guest_count >= 1", name="ck_private_bookings_guest_count"),
        )
    _ensure_indexes(
        "private_bookings",
        (
            ("idx_private_bookings_event_date", ["event_date"]),
            ("idx_private_bookings_status_hold", ["status", "hold_expiry"]),
        ),
    )

    if "private_booking_items" not in existing_tables:
        op.create_table(
            "private_booking_items",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("booking_id", sa.Integer(), nullable=False),
            sa.Column("item_type", sa.String(16), nullable=False),
            sa.Column("description", sa.String(255), nullable=False),
            sa.Column("quantity", sa.Numeric(10, 2), nullable=False, server_default="1"),
            sa.Column("unit_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("discount_type", sa.String(16), nullable=True),
            sa.Column("discount_value", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
            _created_at(),
            sa.ForeignKeyConstraint(["booking_id"], ["private_bookings.id"], ondelete="CASCADE"),
        )

    if "private_booking_documents" not in existing_tables:
        op.create_table(
            "private_booking_documents",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("booking_id", sa.Integer(), nullable=False),
            sa.Column("document_type", sa.String(32), nullable=False, server_default="other"),
            sa.Column("storage_key", sa.Text(), nullable=False),
            sa.Column("original_filename", sa.Text(), nullable=False),
            sa.Column("content_type", sa.String(128), nullable=False),
            sa.Column("sha256", sa.String(64), nullable=False),
            sa.Column("size_bytes", sa.Integer(), nullable=False),
            sa.Column(
                "uploaded_at",
                sa.DateTime(timezone=False),
                nullable=False,
                server_default=sa.func.current_timestamp(),
            ),
            sa.Column("uploaded_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["booking_id"], ["private_bookings.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["uploaded_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("storage_key", name="uq_private_booking_documents_storage_key"),
        )

    # --- Invoices / quotes / recurring ---
    if "invoice_vendors" not in existing_tables:
        op.create_table(
            "invoice_vendors",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(200), nullable=False),
            sa.Column("contact_name", sa.String(200), nullable=True),
            sa.Column("email", sa.String(255), nullable=True),
            sa.Column("phone", sa.String(50), nullable=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("vat_number", sa.String(50), nullable=True),
            sa.Column("payment_terms", sa.Integer(), nullable=False, server_default="30"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _created_at(),
            _updated_at(),
        )

    if "line_item_catalog" not in existing_tables:
        op.create_table(
            "line_item_catalog",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("default_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("default_vat_rate", sa.Numeric(5, 2), nullable=False, server_default="20"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _created_at(),
            _updated_at(),
        )

    if "invoice_series" not in existing_tables:
        op.create_table(
            "invoice_series",
            sa.Column("series_code", sa.String(10), primary_key=True, nullable=False),
            sa.Column("current_sequence", sa.Integer(), nullable=False, server_default="0"),
            _created_at(),
        )

    if "invoices" not in existing_tables:
        # recurring_invoice_id gets its foreign key once recurring_invoices exists.
        op.create_table(
            "invoices",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("invoice_number", sa.String(50), nullable=False),
            sa.Column("vendor_id", sa.Integer(), nullable=True),
            sa.Column("recurring_invoice_id", sa.Integer(), nullable=True),
            sa.Column("invoice_date", sa.Date(), nullable=False),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("reference", sa.String(200), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
            sa.Column("invoice_discount_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
            sa.Column("subtotal_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("vat_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("total_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("paid_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("internal_notes", sa.Text(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.Column("deleted_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("deleted_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["vendor_id"], ["invoice_vendors.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["deleted_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
            sa.CheckConstraint(
                "status IN ('draft','sent','paid','partially_paid','overdue','void','written_off')",
                name="ck_invoices_status",
            ),
        )
        existing_tables.add("invoices")
    _ensure_indexes(
        "invoices",
        (
            ("idx_invoices_vendor_id", ["vendor_id"]),
            ("idx_invoices_status", ["status"]),
            ("idx_invoices_due_date", ["due_date"]),
        ),
    )

    if "invoice_line_items" not in existing_tables:
        op.create_table(
            "invoice_line_items",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("invoice_id", sa.Integer(), nullable=False),
            sa.Column("catalog_item_id", sa.Integer(), nullable=True),
            *_line_item_columns(),
            sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["catalog_item_id"], ["line_item_catalog.id"], ondelete="SET NULL"),
        )
    _ensure_indexes("invoice_line_items", (("idx_invoice_line_items_invoice_id", ["invoice_id"]),))

    if "invoice_payments" not in existing_tables:
        op.create_table(
            "invoice_payments",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("invoice_id", sa.Integer(), nullable=False),
            sa.Column("payment_date", sa.Date(), nullable=False),
            sa.Column("amount", sa.Numeric(10, 2), nullable=False),
            sa.Column("payment_method", sa.String(32), nullable=False),
            sa.Column("reference", sa.String(200), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _created_at(),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.CheckConstraint("amount > 0", name="ck_invoice_payments_amount"),
        )
    _ensure_indexes("invoice_payments", (("idx_invoice_payments_invoice_id", ["invoice_id"]),))

    if "quotes" not in existing_tables:
        op.create_table(
            "quotes",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("quote_number", sa.String(50), nullable=False),
            sa.Column("vendor_id", sa.Integer(), nullable=True),
            sa.Column("quote_date", sa.Date(), nullable=False),
            sa.Column("valid_until", sa.Date(), nullable=False),
            sa.Column("reference", sa.String(200), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
            sa.Column("quote_discount_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
            sa.Column("subtotal_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("vat_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("total_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("internal_notes", sa.Text(), nullable=True),
            sa.Column("converted_to_invoice_id", sa.Integer(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.Column("deleted_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("deleted_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["vendor_id"], ["invoice_vendors.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["converted_to_invoice_id"], ["invoices.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["deleted_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("quote_number", name="uq_quotes_quote_number"),
            sa.CheckConstraint("status IN ('draft','sent','accepted','rejected','expired')", name="ck_quotes_status"),
        )
    _ensure_indexes("quotes", (("idx_quotes_vendor_id", ["vendor_id"]),))

    if "quote_line_items" not in existing_tables:
        op.create_table(
            "quote_line_items",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("quote_id", sa.Integer(), nullable=False),
            sa.Column("catalog_item_id", sa.Integer(), nullable=True),
            *_line_item_columns(),
            sa.ForeignKeyConstraint(["quote_id"], ["quotes.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["catalog_item_id"], ["line_item_catalog.id"], ondelete="SET NULL"),
        )
    _ensure_indexes("quote_line_items", (("idx_quote_line_items_quote_id", ["quote_id"]),))

    if "recurring_invoices" not in existing_tables:
        op.create_table(
            "recurring_invoices",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("vendor_id", sa.Integer(), nullable=False),
            sa.Column("frequency", sa.String(20), nullable=False),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("next_invoice_date", sa.Date(), nullable=False),
            sa.Column("days_before_due", sa.Integer(), nullable=False, server_default="30"),
            sa.Column("reference", sa.String(200), nullable=True),
            sa.Column("invoice_discount_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("internal_notes", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("last_invoice_id", sa.Integer(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["vendor_id"], ["invoice_vendors.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["last_invoice_id"], ["invoices.id"], ondelete="SET NULL"),
            sa.CheckConstraint(
                "frequency IN ('weekly','monthly','quarterly','yearly')",
                name="ck_recurring_invoices_frequency",
            ),
        )
        # SQLite cannot add a constraint to an existing table; the column stays a plain integer there.
        if bind.dialect.name != "sqlite":
            op.create_foreign_key(
                "fk_invoices_recurring_invoice_id",
                "invoices",
                "recurring_invoices",
                ["recurring_invoice_id"],
                ["id"],
                ondelete="SET NULL",
            )
    _ensure_indexes("recurring_invoices", (("idx_recurring_invoices_next_date", ["next_invoice_date"]),))

    if "recurring_invoice_line_items" not in existing_tables:
        op.create_table(
            "recurring_invoice_line_items",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("recurring_invoice_id", sa.Integer(), nullable=False),
            sa.Column("catalog_item_id", sa.Integer(), nullable=True),
            *_line_item_columns(),
            sa.ForeignKeyConstraint(["recurring_invoice_id"], ["recurring_invoices.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["catalog_item_id"], ["line_item_catalog.id"], ondelete="SET NULL"),
        )

    # --- Loyalty ---
    if "loyalty_members" not in existing_tables:
        op.create_table(
            "loyalty_members",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("customer_id", sa.Integer(), nullable=False),
            sa.Column("tier", sa.String(32), nullable=False, server_default="member"),
            sa.Column("total_points", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("available_points", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("lifetime_events", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(32), nullable=False, server_default="active"),
            sa.Column("join_date", sa.Date(), nullable=False),
            sa.Column("last_visit_date", sa.Date(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("customer_id", name="uq_loyalty_members_customer_id"),
            sa.CheckConstraint("available_points >= 0", name="ck_loyalty_members_available_points"),
        )
    _ensure_indexes("loyalty_members", (("idx_loyalty_members_tier", ["tier"]),))

    if "loyalty_rewards" not in existing_tables:
        op.create_table(
            "loyalty_rewards",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("points_cost", sa.Integer(), nullable=False),
            sa.Column("tier_required", sa.String(32), nullable=True),
            sa.Column("category", sa.String(64), nullable=True),
            sa.Column("inventory", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _created_at(),
            _updated_at(),
        )

    if "reward_redemptions" not in existing_tables:
        op.create_table(
            "reward_redemptions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("member_id", sa.Integer(), nullable=False),
            sa.Column("reward_id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(16), nullable=False),
            sa.Column("points_spent", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
            sa.Column("expires_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("redeemed_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("redeemed_by_user_id", sa.Integer(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=False), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["member_id"], ["loyalty_members.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["reward_id"], ["loyalty_rewards.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["redeemed_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("code", name="uq_reward_redemptions_code"),
        )
    _ensure_indexes(
        "reward_redemptions",
        (
            ("ix_reward_redemptions_member_id", ["member_id"]),
            ("idx_reward_redemptions_status_expires", ["status", "expires_at"]),
        ),
    )

    if "loyalty_check_ins" not in existing_tables:
        op.create_table(
            "loyalty_check_ins",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("member_id", sa.Integer(), nullable=False),
            sa.Column("event_date", sa.Date(), nullable=False),
            sa.Column("event_type", sa.String(32), nullable=False, server_default="standard"),
            sa.Column("points_earned", sa.Integer(), nullable=False, server_default="0"),
            sa.Column(
                "checked_in_at",
                sa.DateTime(timezone=False),
                nullable=False,
                server_default=sa.func.current_timestamp(),
            ),
            sa.Column("checked_in_by_user_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["member_id"], ["loyalty_members.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["checked_in_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("member_id", "event_date", name="uq_loyalty_check_ins_member_date"),
        )
    _ensure_indexes("loyalty_check_ins", (("ix_loyalty_check_ins_member_id", ["member_id"]),))

    if "loyalty_point_transactions" not in existing_tables:
        op.create_table(
            "loyalty_point_transactions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("member_id", sa.Integer(), nullable=False),
            sa.Column("points", sa.Integer(), nullable=False),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("transaction_type", sa.String(32), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("reference_type", sa.String(64), nullable=True),
            sa.Column("reference_id", sa.String(64), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["member_id"], ["loyalty_members.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        )
    _ensure_indexes("loyalty_point_transactions", (("ix_loyalty_point_transactions_member_id", ["member_id"]),))

    # --- Calendar notes ---
    if "calendar_notes" not in existing_tables:
        op.create_table(
            "calendar_notes",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("note_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=False),
            sa.Column("title", sa.String(160), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("source", sa.String(16), nullable=False, server_default="manual"),
            sa.Column("start_time", sa.Time(), nullable=True),
            sa.Column("end_time", sa.Time(), nullable=True),
            sa.Column("color", sa.String(7), nullable=False, server_default="#0EA5E9"),
            sa.Column("generated_context_json", sa.Text(), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.Column("updated_by_user_id", sa.Integer(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["updated_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.CheckConstraint("end_date >= note_date", name="ck_calendar_notes_date_order"),
            sa.CheckConstraint("source IN ('manual', 'ai', 'holiday')", name="ck_calendar_notes_source"),
        )
    _ensure_indexes("calendar_notes", (("idx_calendar_notes_note_date", ["note_date"]),))


def downgrade() -> None:
    for table in (
        "calendar_notes",
        "loyalty_point_transactions",
        "loyalty_check_ins",
        "reward_redemptions",
        "loyalty_rewards",
        "loyalty_members",
        "recurring_invoice_line_items",
        "quote_line_items",
        "quotes",
        "invoice_payments",
        "invoice_line_items",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    if bind.dialect.name != "sqlite":
        op.drop_constraint("fk_invoices_recurring_invoice_id", "invoices", type_="foreignkey")
    for table in (
        "recurring_invoices",
        "invoices",
        "invoice_series",
        "line_item_catalog",
        "invoice_vendors",
        "private_booking_documents",
        "private_booking_items",
        "private_bookings",
        "table_booking_modifications",
        "table_booking_payments",
        "table_booking_items",
        "table_booking_tables",
        "table_bookings",
        "booking_policies",
        "venue_tables",
        "message_templates",
        "messages",
        "customers",
        "audit_events",
        "role_permissions",
        "user_roles",
        "permissions",
        "roles",
        "users",
    ):
        op.drop_table(table)
