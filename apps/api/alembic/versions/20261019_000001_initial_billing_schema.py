"""initial billing schema: users, orders, subscriptions, credits, credit history

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "user_orders",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("charge_type", sa.String(), nullable=False),
        sa.Column("interval", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("original_price", sa.Float(), nullable=False),
        sa.Column("final_price", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("external_order_id", sa.String(), nullable=True),
        sa.Column("external_transaction_id", sa.String(), nullable=True),
        sa.Column("checkout_session_id", sa.String(), nullable=True),
        sa.Column("order_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credits_amount", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_orders_user_id", "user_orders", ["user_id"], unique=False)
    op.create_index("ix_user_orders_status", "user_orders", ["status"], unique=False)
    op.create_index(
        "ix_user_orders_external_transaction_id", "user_orders", ["external_transaction_id"], unique=False
    )
    op.create_index("ix_user_orders_checkout_session_id", "user_orders", ["checkout_session_id"], unique=False)
    op.create_index("ix_user_orders_created_at", "user_orders", ["created_at"], unique=False)

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("interval", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["order_id"], ["user_orders.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "tier", name="uq_user_subscriptions_user_tier"),
    )
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"], unique=False)
    op.create_index("ix_user_subscriptions_order_id", "user_subscriptions", ["order_id"], unique=False)
    op.create_index("ix_user_subscriptions_status", "user_subscriptions", ["status"], unique=False)

    op.create_table(
        "user_credits",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("total_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("used_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remaining_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_credits_user_id", "user_credits", ["user_id"], unique=True)

    op.create_table(
        "user_credit_history",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("change_amount", sa.Integer(), nullable=False),
        sa.Column("before_credits", sa.Integer(), nullable=False),
        sa.Column("after_credits", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("generation_id", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["order_id"], ["user_orders.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["subscription_id"], ["user_subscriptions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_credit_history_user_id", "user_credit_history", ["user_id"], unique=False)
    op.create_index("ix_user_credit_history_order_id", "user_credit_history", ["order_id"], unique=False)
    op.create_index("ix_user_credit_history_created_at", "user_credit_history", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_user_credit_history_created_at", table_name="user_credit_history")
    op.drop_index("ix_user_credit_history_order_id", table_name="user_credit_history")
    op.drop_index("ix_user_credit_history_user_id", table_name="user_credit_history")
    op.drop_table("user_credit_history")

    op.drop_index("ix_user_credits_user_id", table_name="user_credits")
    op.drop_table("user_credits")

    op.drop_index("ix_user_subscriptions_status", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_order_id", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_user_id", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")

    op.drop_index("ix_user_orders_created_at", table_name="user_orders")
    op.drop_index("ix_user_orders_checkout_session_id", table_name="user_orders")
    op.drop_index("ix_user_orders_external_transaction_id", table_name="user_orders")
    op.drop_index("ix_user_orders_status", table_name="user_orders")
    op.drop_index("ix_user_orders_user_id", table_name="user_orders")
    op.drop_table("user_orders")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
