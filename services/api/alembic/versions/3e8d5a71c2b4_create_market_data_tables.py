"""create_market_data_tables

Revision ID: 3e8d5a71c2b4
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "3e8d5a71c2b4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _now() -> sa.TextClause:
    return sa.text("now()")


def upgrade() -> None:
    op.create_table(
        "market_raw_snapshots",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("snapshot_id", sa.String(length=36), nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("endpoint", sa.String(length=100), nullable=False),
        sa.Column("request_params", postgresql.JSONB(), nullable=True),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("raw_payload", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_market_raw_snapshots_snapshot_id"), "market_raw_snapshots", ["snapshot_id"], unique=True)
    op.create_index(op.f("ix_market_raw_snapshots_provider"), "market_raw_snapshots", ["provider"], unique=False)
    op.create_index(op.f("ix_market_raw_snapshots_requested_at"), "market_raw_snapshots", ["requested_at"], unique=False)

    op.create_table(
        "master_market_data",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("provider_source", sa.String(length=50), nullable=False),
        sa.Column("provider_product_id", sa.String(length=100), nullable=False),
        sa.Column("provider_variant_id", sa.String(length=100), nullable=True),
        sa.Column("sku", sa.String(length=50), nullable=True),
        sa.Column("size_key", sa.String(length=20), nullable=False),
        sa.Column("size_numeric", sa.Float(), nullable=True),
        sa.Column("size_system", sa.String(length=10), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("region_code", sa.String(length=10), nullable=False),
        sa.Column("product_condition", sa.String(length=20), nullable=False),
        sa.Column("packaging_condition", sa.String(length=20), nullable=False),
        sa.Column("is_consigned", sa.Boolean(), nullable=False),
        sa.Column("lowest_ask", sa.Numeric(12, 2), nullable=True),
        sa.Column("highest_bid", sa.Numeric(12, 2), nullable=True),
        sa.Column("last_sale_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("sales_last_72h", sa.Integer(), nullable=True),
        sa.Column("sales_last_30d", sa.Integer(), nullable=True),
        sa.Column("ask_count", sa.Integer(), nullable=True),
        sa.Column("bid_count", sa.Integer(), nullable=True),
        sa.Column("snapshot_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("raw_snapshot_id", sa.String(length=36), nullable=True),
        sa.Column("ingested_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider",
            "provider_product_id",
            "size_key",
            "currency_code",
            "region_code",
            "product_condition",
            "is_consigned",
            "snapshot_at",
            name="uq_master_market_data_observation",
        ),
    )
    op.create_index("ix_master_market_data_sku_size", "master_market_data", ["sku", "size_key"], unique=False)

    op.create_table(
        "master_market_latest",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("provider_source", sa.String(length=50), nullable=False),
        sa.Column("provider_product_id", sa.String(length=100), nullable=False),
        sa.Column("sku", sa.String(length=50), nullable=True),
        sa.Column("size_key", sa.String(length=20), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("region_code", sa.String(length=10), nullable=False),
        sa.Column("is_consigned", sa.Boolean(), nullable=False),
        sa.Column("lowest_ask", sa.Numeric(12, 2), nullable=True),
        sa.Column("highest_bid", sa.Numeric(12, 2), nullable=True),
        sa.Column("last_sale_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("sales_last_72h", sa.Integer(), nullable=True),
        sa.Column("sales_last_30d", sa.Integer(), nullable=True),
        sa.Column("snapshot_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refreshed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider",
            "provider_product_id",
            "size_key",
            "currency_code",
            "region_code",
            name="uq_master_market_latest_group",
        ),
    )
    op.create_index("ix_master_market_latest_sku_size", "master_market_latest", ["sku", "size_key"], unique=False)

    op.create_table(
        "market_offer_histogram_bins",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("provider_product_id", sa.String(length=100), nullable=False),
        sa.Column("size_key", sa.String(length=20), nullable=False),
        sa.Column("region_code", sa.String(length=10), nullable=False),
        sa.Column("is_consigned", sa.Boolean(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("offer_count", sa.Integer(), nullable=False),
        sa.Column("snapshot_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("raw_snapshot_id", sa.String(length=36), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_market_offer_histogram_key",
        "market_offer_histogram_bins",
        ["provider", "provider_product_id", "size_key", "region_code", "is_consigned"],
        unique=False,
    )

    op.create_table(
        "market_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("sku", sa.String(length=50), nullable=False),
        sa.Column("size", sa.String(length=20), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("not_before", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_market_jobs_user_id"), "market_jobs", ["user_id"], unique=False)
    op.create_index("ix_market_jobs_ready", "market_jobs", ["status", "priority", "created_at"], unique=False)
    # At most one pending job per key
    op.create_index(
        "uq_market_jobs_pending_key",
        "market_jobs",
        ["provider", "sku", "size"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "market_job_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(length=36), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("jobs_selected", sa.Integer(), nullable=False),
        sa.Column("jobs_succeeded", sa.Integer(), nullable=False),
        sa.Column("jobs_failed", sa.Integer(), nullable=False),
        sa.Column("jobs_requeued", sa.Integer(), nullable=False),
        sa.Column("budget_exhausted", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id"),
    )

    op.create_table(
        "market_refresh_marks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("last_enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "priority", "provider", name="uq_market_refresh_marks_key"),
    )

    op.create_table(
        "market_size_mappings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("sku", sa.String(length=50), nullable=False),
        sa.Column("uk_size", sa.String(length=20), nullable=False),
        sa.Column("product_name", sa.String(length=300), nullable=True),
        sa.Column("brand", sa.String(length=30), nullable=True),
        sa.Column("gender", sa.String(length=20), nullable=True),
        sa.Column("provider_product_id", sa.String(length=100), nullable=True),
        sa.Column("provider_variant_id", sa.String(length=100), nullable=True),
        sa.Column("provider_size", sa.String(length=20), nullable=True),
        sa.Column("match_confidence", sa.Float(), nullable=True),
        sa.Column("match_method", sa.String(length=30), nullable=True),
        sa.Column("mapping_status", sa.String(length=20), nullable=False),
        sa.Column("approved_by", sa.String(length=100), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suggested_product_id", sa.String(length=100), nullable=True),
        sa.Column("suggested_confidence", sa.Float(), nullable=True),
        sa.Column("suggested_method", sa.String(length=30), nullable=True),
        sa.Column("last_sync_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "sku", "uk_size", name="uq_market_size_mappings_key"),
    )
    op.create_index(op.f("ix_market_size_mappings_sku"), "market_size_mappings", ["sku"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_market_size_mappings_sku"), table_name="market_size_mappings")
    op.drop_table("market_size_mappings")
    op.drop_table("market_refresh_marks")
    op.drop_table("market_job_runs")
    op.drop_index("uq_market_jobs_pending_key", table_name="market_jobs")
    op.drop_index("ix_market_jobs_ready", table_name="market_jobs")
    op.drop_index(op.f("ix_market_jobs_user_id"), table_name="market_jobs")
    op.drop_table("market_jobs")
    op.drop_index("ix_market_offer_histogram_key", table_name="market_offer_histogram_bins")
    op.drop_table("market_offer_histogram_bins")
    op.drop_index("ix_master_market_latest_sku_size", table_name="master_market_latest")
    op.drop_table("master_market_latest")
    op.drop_index("ix_master_market_data_sku_size", table_name="master_market_data")
    op.drop_table("master_market_data")
    op.drop_index(op.f("ix_market_raw_snapshots_requested_at"), table_name="market_raw_snapshots")
    op.drop_index(op.f("ix_market_raw_snapshots_provider"), table_name="market_raw_snapshots")
    op.drop_index(op.f("ix_market_raw_snapshots_snapshot_id"), table_name="market_raw_snapshots")
    op.drop_table("market_raw_snapshots")
