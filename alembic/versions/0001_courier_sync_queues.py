from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_courier_sync_queues"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "sites",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("addressee", sa.String(length=200), nullable=True),
        sa.Column("addr1", sa.String(length=200), nullable=True),
        sa.Column("addr2", sa.String(length=200), nullable=True),
        sa.Column("city", sa.String(length=120), nullable=True),
        sa.Column("zip", sa.String(length=20), nullable=True),
        sa.Column("country", sa.String(length=60), nullable=True),
        sa.Column("phone", sa.String(length=60), nullable=True),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("order_type", sa.String(length=40), primary_key=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("tran_id", sa.String(length=60), nullable=True),
        sa.Column("tran_date", sa.Date(), nullable=True),
        sa.Column("required_date", sa.Date(), nullable=True),
        sa.Column("ship_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
        sa.Column("customer_name", sa.String(length=200), nullable=True),
        sa.Column("customer_email", sa.String(length=200), nullable=True),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id"), nullable=True),
        sa.Column("ship_addressee", sa.String(length=200), nullable=True),
        sa.Column("ship_addr1", sa.String(length=200), nullable=True),
        sa.Column("ship_addr2", sa.String(length=200), nullable=True),
        sa.Column("ship_city", sa.String(length=120), nullable=True),
        sa.Column("ship_state", sa.String(length=120), nullable=True),
        sa.Column("ship_zip", sa.String(length=20), nullable=True),
        sa.Column("ship_country", sa.String(length=60), nullable=True),
        sa.Column("ship_method", sa.String(length=120), nullable=True),
        sa.Column("delivery_service", sa.String(length=120), nullable=True),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("driver_notes", sa.Text(), nullable=True),
        sa.Column("raised_by", sa.String(length=200), nullable=True),
        sa.Column("site_contact_name", sa.String(length=200), nullable=True),
        sa.Column("site_contact_phone", sa.String(length=60), nullable=True),
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=True),
        sa.Column("release_to_courier", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("customer_pickup", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("released", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("courier_task_id", sa.String(length=100), nullable=True),
        sa.Column("courier_task_id_history", sa.Text(), nullable=True),
        sa.Column("courier_task_status", sa.String(length=200), nullable=True),
        sa.Column("tracking_link", sa.Text(), nullable=True),
        sa.Column("driver", sa.String(length=200), nullable=True),
        sa.Column("route_stop_number", sa.Integer(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("order_type", sa.String(length=40), nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("item", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("item_display", sa.String(length=200), nullable=True),
        sa.Column("quantity", sa.Numeric(14, 4), nullable=False, server_default="0"),
        sa.Column("quantity_fulfilled", sa.Numeric(14, 4), nullable=False, server_default="0"),
        sa.Column("weight", sa.Numeric(14, 4), nullable=True),
        sa.ForeignKeyConstraint(["order_id", "order_type"], ["orders.id", "orders.order_type"]),
    )
    op.create_index("ix_order_lines_order", "order_lines", ["order_id", "order_type"])

    op.create_table(
        "export_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("order_type", sa.String(length=40), nullable=False),
        sa.Column("context", sa.String(length=20), nullable=False),
        sa.Column("courier_task_id", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_id", sa.String(length=64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("debug_url", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_export_queue_order_status", "export_queue", ["order_id", "status"])
    op.create_index("ix_export_queue_status_next_run", "export_queue", ["status", "next_run_at"])

    op.create_table(
        "apply_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("raw_payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("action", sa.String(length=120), nullable=True),
        sa.Column("reference", sa.String(length=60), nullable=True),
        sa.Column("resolved_order_id", sa.Integer(), nullable=True),
        sa.Column("resolved_order_type", sa.String(length=40), nullable=True),
        sa.Column("courier_task_id", sa.String(length=100), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_apply_queue_status", "apply_queue", ["status"])


def downgrade():
    op.drop_index("ix_apply_queue_status", table_name="apply_queue")
    op.drop_table("apply_queue")
    op.drop_index("ix_export_queue_status_next_run", table_name="export_queue")
    op.drop_index("ix_export_queue_order_status", table_name="export_queue")
    op.drop_table("export_queue")
    op.drop_index("ix_order_lines_order", table_name="order_lines")
    op.drop_table("order_lines")
    op.drop_table("orders")
    op.drop_table("sites")
