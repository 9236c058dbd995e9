"""dispatch_schema

Revision ID: 4b7e2c91d0a3
Revises:
Create Date: 2026-10-19 09:12:31.552810

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4b7e2c91d0a3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, driver state, requests, offers, escrow, wallets and notifications."""
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="client"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "driverprofile",
        sa.Column("driver_id", sa.Integer(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False, server_default=""),
        sa.Column("service_type", sa.String(), nullable=False, server_default="taxi"),
        sa.Column("vehicle_class", sa.String(), nullable=False, server_default="standard"),
        sa.Column("rating_average", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_rides", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["driver_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("driver_id"),
    )
    op.create_index("ix_driverprofile_service_type", "driverprofile", ["service_type"])
    op.create_table(
        "driverlocation",
        sa.Column("driver_id", sa.Integer(), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lng", sa.Float(), nullable=False),
        sa.Column("heading", sa.Float(), nullable=True),
        sa.Column("speed", sa.Float(), nullable=True),
        sa.Column("accuracy", sa.Float(), nullable=True),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_ping", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["driver_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("driver_id"),
    )
    op.create_index("ix_driverlocation_is_available", "driverlocation", ["is_available"])
    op.create_index("ix_driverlocation_last_ping", "driverlocation", ["last_ping"])
    op.create_table(
        "drivercredit",
        sa.Column("driver_id", sa.Integer(), nullable=False),
        sa.Column("rides_remaining", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rides_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("plan_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("plan_end", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["driver_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("driver_id"),
    )
    op.create_table(
        "creditledgerentry",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("driver_id", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=True),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_creditledgerentry_driver_id", "creditledgerentry", ["driver_id"])
    op.create_index("ix_creditledgerentry_request_id", "creditledgerentry", ["request_id"])
    op.create_table(
        "riderequest",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("requester_id", sa.Integer(), nullable=False),
        sa.Column("service_type", sa.String(), nullable=False, server_default="taxi"),
        sa.Column("vehicle_class", sa.String(), nullable=True),
        sa.Column("priority", sa.String(), nullable=False, server_default="normal"),
        sa.Column("pickup_lat", sa.Float(), nullable=False),
        sa.Column("pickup_lng", sa.Float(), nullable=False),
        sa.Column("dest_lat", sa.Float(), nullable=True),
        sa.Column("dest_lng", sa.Float(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("driver_id", sa.Integer(), nullable=True),
        sa.Column("estimated_price", sa.Integer(), nullable=True),
        sa.Column("agreed_price", sa.Integer(), nullable=True),
        sa.Column("bidding_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("proposed_price", sa.Integer(), nullable=True),
        sa.Column("bidding_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["requester_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_riderequest_status", "riderequest", ["status"])
    op.create_index("ix_riderequest_requester_id", "riderequest", ["requester_id"])
    op.create_index("ix_riderequest_driver_id", "riderequest", ["driver_id"])
    op.create_table(
        "rideoffer",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("driver_id", sa.Integer(), nullable=False),
        sa.Column("offered_price", sa.Integer(), nullable=False),
        sa.Column("is_counter_offer", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("message", sa.String(), nullable=True),
        sa.Column("driver_rating", sa.Float(), nullable=False, server_default="0"),
        sa.Column("distance_to_pickup_km", sa.Float(), nullable=False, server_default="0"),
        sa.Column("eta_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["request_id"], ["riderequest.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rideoffer_request_id", "rideoffer", ["request_id"])
    op.create_index("ix_rideoffer_driver_id", "rideoffer", ["driver_id"])
    op.create_index("ix_rideoffer_status", "rideoffer", ["status"])
    op.create_table(
        "escrowtransaction",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("buyer_id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("platform_fee", sa.Integer(), nullable=False),
        sa.Column("net_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="CDF"),
        sa.Column("status", sa.String(), nullable=False, server_default="held"),
        sa.Column("payment_method", sa.String(), nullable=False, server_default="wallet"),
        sa.Column("release_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_released", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["request_id"], ["riderequest.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id"),
    )
    op.create_index("ix_escrowtransaction_buyer_id", "escrowtransaction", ["buyer_id"])
    op.create_index("ix_escrowtransaction_seller_id", "escrowtransaction", ["seller_id"])
    op.create_index("ix_escrowtransaction_status", "escrowtransaction", ["status"])
    op.create_table(
        "wallet",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(), nullable=False, server_default="CDF"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )
    op.create_table(
        "wallettransaction",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("wallet_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["wallet_id"], ["wallet.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_wallettransaction_wallet_id", "wallettransaction", ["wallet_id"])
    op.create_index("ix_wallettransaction_user_id", "wallettransaction", ["user_id"])
    op.create_index("ix_wallettransaction_reference_id", "wallettransaction", ["reference_id"])
    op.create_table(
        "notification",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=True),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_user_id", "notification", ["user_id"])
    op.create_index("ix_notification_request_id", "notification", ["request_id"])


def downgrade() -> None:
    """Drop every table in reverse dependency order."""
    op.drop_index("ix_notification_request_id", table_name="notification")
    op.drop_index("ix_notification_user_id", table_name="notification")
    op.drop_table("notification")
    op.drop_index("ix_wallettransaction_reference_id", table_name="wallettransaction")
    op.drop_index("ix_wallettransaction_user_id", table_name="wallettransaction")
    op.drop_index("ix_wallettransaction_wallet_id", table_name="wallettransaction")
    op.drop_table("wallettransaction")
    op.drop_table("wallet")
    op.drop_index("ix_escrowtransaction_status", table_name="escrowtransaction")
    op.drop_index("ix_escrowtransaction_seller_id", table_name="escrowtransaction")
    op.drop_index("ix_escrowtransaction_buyer_id", table_name="escrowtransaction")
    op.drop_table("escrowtransaction")
    op.drop_index("ix_rideoffer_status", table_name="rideoffer")
    op.drop_index("ix_rideoffer_driver_id", table_name="rideoffer")
    op.drop_index("ix_rideoffer_request_id", table_name="rideoffer")
    op.drop_table("rideoffer")
    op.drop_index("ix_riderequest_driver_id", table_name="riderequest")
    op.drop_index("ix_riderequest_requester_id", table_name="riderequest")
    op.drop_index("ix_riderequest_status", table_name="riderequest")
    op.drop_table("riderequest")
    op.drop_index("ix_creditledgerentry_request_id", table_name="creditledgerentry")
    op.drop_index("ix_creditledgerentry_driver_id", table_name="creditledgerentry")
    op.drop_table("creditledgerentry")
    op.drop_table("drivercredit")
    op.drop_index("ix_driverlocation_last_ping", table_name="driverlocation")
    op.drop_index("ix_driverlocation_is_available", table_name="driverlocation")
    op.drop_table("driverlocation")
    op.drop_index("ix_driverprofile_service_type", table_name="driverprofile")
    op.drop_table("driverprofile")
    op.drop_table("user")
