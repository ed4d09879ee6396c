from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "villas",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_guests", sa.Integer(), nullable=False),
        sa.Column("bedrooms", sa.Integer(), nullable=True),
        sa.Column("bathrooms", sa.Integer(), nullable=True),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("villa_id", sa.Integer(), sa.ForeignKey("villas.id"), nullable=False),
        sa.Column("villa_name", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("guest_name", sa.String(), nullable=False),
        sa.Column("address", sa.JSON(), nullable=True),
        sa.Column("check_in", sa.Date(), nullable=False),
        sa.Column("check_out", sa.Date(), nullable=False),
        sa.Column("check_in_time", sa.String(), nullable=False, server_default="14:00"),
        sa.Column("check_out_time", sa.String(), nullable=False, server_default="12:00"),
        sa.Column("guests", sa.Integer(), nullable=False),
        sa.Column("infants", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("total_nights", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="INR"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payment_method", sa.String(), nullable=False, server_default="Pay at Villa"),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payment_id", sa.String(), nullable=True),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("payment_status", sa.String(), nullable=False, server_default="unpaid"),
        sa.Column("payment_failure_reason", sa.String(), nullable=True),
        sa.Column("refund_id", sa.String(), nullable=True),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refund_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cancellation_history", sa.JSON(), nullable=False),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_bookings_booking_id", "bookings", ["booking_id"], unique=True)
    op.create_index("ix_bookings_villa_id", "bookings", ["villa_id"], unique=False)
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"], unique=False)
    op.create_index("ix_bookings_email", "bookings", ["email"], unique=False)
    op.create_index("ix_bookings_order_id", "bookings", ["order_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)
    op.create_index("ix_bookings_villa_dates", "bookings", ["villa_id", "check_in", "check_out"], unique=False)

    op.create_table(
        "blocked_dates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("villa_id", sa.Integer(), sa.ForeignKey("villas.id"), nullable=False),
        sa.Column("villa_name", sa.String(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False, server_default="Maintenance"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_blocked_dates_villa_dates", "blocked_dates", ["villa_id", "start_date", "end_date"], unique=False)

    op.create_table(
        "cancel_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("user_email", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("villa_name", sa.String(), nullable=True),
        sa.Column("check_in", sa.Date(), nullable=True),
        sa.Column("check_out", sa.Date(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("refund_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refund_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("admin_response", sa.String(), nullable=True),
        sa.Column("admin_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_cancel_requests_booking_id", "cancel_requests", ["booking_id"], unique=False)
    op.create_index("ix_cancel_requests_user_email", "cancel_requests", ["user_email"], unique=False)
    op.create_index("ix_cancel_requests_status", "cancel_requests", ["status"], unique=False)

def downgrade():
    op.drop_index("ix_cancel_requests_status", table_name="cancel_requests")
    op.drop_index("ix_cancel_requests_user_email", table_name="cancel_requests")
    op.drop_index("ix_cancel_requests_booking_id", table_name="cancel_requests")
    op.drop_table("cancel_requests")

    op.drop_index("ix_blocked_dates_villa_dates", table_name="blocked_dates")
    op.drop_table("blocked_dates")

    op.drop_index("ix_bookings_villa_dates", table_name="bookings")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_order_id", table_name="bookings")
    op.drop_index("ix_bookings_email", table_name="bookings")
    op.drop_index("ix_bookings_user_id", table_name="bookings")
    op.drop_index("ix_bookings_villa_id", table_name="bookings")
    op.drop_index("ix_bookings_booking_id", table_name="bookings")
    op.drop_table("bookings")

    op.drop_table("villas")
