from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_instant_booking"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)


def upgrade() -> None:
    op.create_table(
        "masters",
        sa.Column("master_id", sa.String(length=36), primary_key=True),
        sa.Column("display_name", sa.String(length=200), nullable=False),
        sa.Column("rating", sa.Numeric(3, 2), nullable=True),
        sa.Column("response_time_minutes", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "master_services",
        sa.Column("service_id", sa.String(length=36), primary_key=True),
        sa.Column("master_id", sa.String(length=36), sa.ForeignKey("masters.master_id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.String(length=2000), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("base_price", MONEY, nullable=False),
        sa.Column("instant_booking_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("auto_confirm", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_master_services_master_id", "master_services", ["master_id"], unique=False)

    op.create_table(
        "master_working_hours",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("master_id", sa.String(length=36), sa.ForeignKey("masters.master_id"), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("master_id", "day_of_week", "start_time", name="uq_master_hours_window"),
    )

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("client_id", sa.String(length=36), nullable=False),
        sa.Column("master_id", sa.String(length=36), sa.ForeignKey("masters.master_id"), nullable=False),
        sa.Column(
            "service_id",
            sa.String(length=36),
            sa.ForeignKey("master_services.service_id"),
            nullable=False,
        ),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("address", sa.String(length=200), nullable=True),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("payment_method", sa.String(length=32), nullable=False, server_default="on_meeting"),
        sa.Column("base_amount", MONEY, nullable=False),
        sa.Column("urgent_fee", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("platform_fee", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("cancellation_fee", MONEY, nullable=True),
        sa.Column("refund_amount", MONEY, nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("urgent_booking", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rescheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(length=36), nullable=True),
        sa.Column("cancellation_reason", sa.String(length=500), nullable=True),
        sa.Column("rescheduled_by", sa.String(length=36), nullable=True),
    )
    op.create_index("ix_bookings_client_id", "bookings", ["client_id"], unique=False)
    op.create_index("ix_bookings_master_window", "bookings", ["master_id", "starts_at", "ends_at"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)

    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("provider_reference", sa.String(length=255), nullable=True),
        sa.Column("error", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"], unique=False)
    op.create_index("ix_transactions_booking_type", "transactions", ["booking_id", "type"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_transactions_booking_type", table_name="transactions")
    op.drop_index("ix_transactions_user_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_master_window", table_name="bookings")
    op.drop_index("ix_bookings_client_id", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("master_working_hours")
    op.drop_index("ix_master_services_master_id", table_name="master_services")
    op.drop_table("master_services")
    op.drop_table("masters")
