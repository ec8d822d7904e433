"""feature activations, cascade snapshots and target tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _target_table(name: str, *extra: sa.Column) -> None:
    # Target collections share identity, tenant and activation columns.
    op.create_table(
        name,
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        *extra,
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(f"ix_{name}_tenant_id", name, ["tenant_id"], unique=False)
    op.create_index(f"ix_{name}_tenant_active", name, ["tenant_id", "is_active"], unique=False)


def upgrade() -> None:
    # One activation flag per tenant and feature; flips drive the cascade.
    op.create_table(
        "tenant_features",
        sa.Column("tenant_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("feature_key", sa.String(), primary_key=True, nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Records force-deactivated by a cascade, restored when the feature comes back.
    op.create_table(
        "feature_deactivated_items",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("feature_key", sa.String(), nullable=False),
        sa.Column("table_name", sa.String(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "tenant_id",
            "feature_key",
            "table_name",
            "item_id",
            name="uq_feature_deactivated_items_item",
        ),
    )
    op.create_index(
        "ix_feature_deactivated_items_lookup",
        "feature_deactivated_items",
        ["tenant_id", "feature_key"],
        unique=False,
    )

    _target_table("coupons", sa.Column("code", sa.String(), nullable=False))
    _target_table("promotions", sa.Column("name", sa.String(), nullable=False))
    _target_table(
        "delivery_drivers",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_available", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    )
    _target_table(
        "tables",
        sa.Column("label", sa.String(), nullable=False),
        sa.Column("seats", sa.Integer(), nullable=True),
    )


def downgrade() -> None:
    for name in ("tables", "delivery_drivers", "promotions", "coupons"):
        op.drop_index(f"ix_{name}_tenant_active", table_name=name)
        op.drop_index(f"ix_{name}_tenant_id", table_name=name)
        op.drop_table(name)
    op.drop_index("ix_feature_deactivated_items_lookup", table_name="feature_deactivated_items")
    op.drop_table("feature_deactivated_items")
    op.drop_table("tenant_features")
