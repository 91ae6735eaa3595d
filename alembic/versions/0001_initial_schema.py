"""initial reservation schema

Revision ID: 0001
Revises:
Create Date: 2026-10-17 00:00:00

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

item_kind = sa.Enum("COPY", "STOCK_UNIT", name="itemkind")
token_state = sa.Enum("HELD", "RELEASED", "COMMITTED", name="tokenstate")
loan_state = sa.Enum("RESERVED", "ACTIVE", "OVERDUE", "RETURNED", name="loanstate")
order_state = sa.Enum(
    "CREATED", "AWAITING_PAYMENT", "PAID", "FULFILLED", "DECLINED", "EXPIRED", "CANCELLED",
    name="orderstate",
)
# Second use of orderstate; the type itself is created with "transactions"
order_state_ref = postgresql.ENUM(
    "CREATED", "AWAITING_PAYMENT", "PAID", "FULFILLED", "DECLINED", "EXPIRED", "CANCELLED",
    name="orderstate", create_type=False,
)
payment_outcome = sa.Enum("CONFIRMED", "DECLINED", "REFUNDED", name="paymentoutcome")
event_disposition = sa.Enum("APPLIED", "ANOMALY", name="eventdisposition")


def upgrade() -> None:
    op.create_table(
        "inventory_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("kind", item_kind, nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=True),
        sa.Column("reserved_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unit_price", sa.Float(), nullable=False, server_default="0"),
        sa.Column("digital", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.CheckConstraint("reserved_units >= 0", name="ck_inventory_reserved_non_negative"),
        sa.CheckConstraint(
            "capacity IS NULL OR reserved_units <= capacity",
            name="ck_inventory_reserved_within_capacity",
        ),
    )
    op.create_index("ix_inventory_items_id", "inventory_items", ["id"])

    op.create_table(
        "ledger_tokens",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("item_id", sa.String(), sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("state", token_state, nullable=False),
        sa.Column("owner_ref", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("settled_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_ledger_tokens_id", "ledger_tokens", ["id"])
    op.create_index("ix_ledger_tokens_item_id", "ledger_tokens", ["item_id"])
    op.create_index("ix_ledger_tokens_state", "ledger_tokens", ["state"])
    op.create_index("ix_ledger_tokens_owner_ref", "ledger_tokens", ["owner_ref"])

    op.create_table(
        "reservations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("item_id", sa.String(), sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("token_id", sa.String(), sa.ForeignKey("ledger_tokens.id"), nullable=False),
        sa.Column("state", loan_state, nullable=False),
        sa.Column("renewals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("due_at", sa.DateTime(), nullable=False),
        sa.Column("returned_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_reservations_id", "reservations", ["id"])
    op.create_index("ix_reservations_item_id", "reservations", ["item_id"])
    op.create_index("ix_reservations_principal_id", "reservations", ["principal_id"])
    op.create_index("ix_reservations_state", "reservations", ["state"])
    op.create_index("ix_reservations_due_at", "reservations", ["due_at"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("state", order_state, nullable=False),
        sa.Column("total_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("payment_ref", sa.String(), nullable=False),
        sa.Column("checkout_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_transactions_id", "transactions", ["id"])
    op.create_index("ix_transactions_principal_id", "transactions", ["principal_id"])
    op.create_index("ix_transactions_state", "transactions", ["state"])
    op.create_index("ix_transactions_payment_ref", "transactions", ["payment_ref"], unique=True)

    op.create_table(
        "transaction_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("transaction_id", sa.String(), sa.ForeignKey("transactions.id"), nullable=False),
        sa.Column("item_id", sa.String(), sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Float(), nullable=False),
        sa.Column("token_id", sa.String(), sa.ForeignKey("ledger_tokens.id"), nullable=False),
    )
    op.create_index("ix_transaction_lines_transaction_id", "transaction_lines", ["transaction_id"])

    op.create_table(
        "payment_events",
        sa.Column("event_id", sa.String(), primary_key=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("transaction_id", sa.String(), sa.ForeignKey("transactions.id"), nullable=False),
        sa.Column("payment_ref", sa.String(), nullable=False),
        sa.Column("outcome", payment_outcome, nullable=False),
        sa.Column("disposition", event_disposition, nullable=False),
        sa.Column("resulting_state", order_state_ref, nullable=False),
        sa.Column("received_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_payment_events_idempotency_key", "payment_events", ["idempotency_key"], unique=True)
    op.create_index("ix_payment_events_transaction_id", "payment_events", ["transaction_id"])

    op.create_table(
        "retrieval_grants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("transaction_id", sa.String(), sa.ForeignKey("transactions.id"), nullable=False),
        sa.Column("item_id", sa.String(), sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("access_key", sa.String(), nullable=False, unique=True),
        sa.Column("issued_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_retrieval_grants_transaction_id", "retrieval_grants", ["transaction_id"])
    op.create_index("ix_retrieval_grants_principal_id", "retrieval_grants", ["principal_id"])


def downgrade() -> None:
    op.drop_table("retrieval_grants")
    op.drop_table("payment_events")
    op.drop_table("transaction_lines")
    op.drop_table("transactions")
    op.drop_table("reservations")
    op.drop_table("ledger_tokens")
    op.drop_table("inventory_items")
    bind = op.get_bind()
    for enum_type in (event_disposition, payment_outcome, order_state, loan_state, token_state, item_kind):
        enum_type.drop(bind, checkfirst=True)
