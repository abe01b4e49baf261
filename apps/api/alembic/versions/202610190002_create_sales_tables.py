"""create sales clients, leads, pipeline deals, quotes and customers

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _tenant_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("public_id", sa.String(length=32), nullable=False),
        sa.Column("organization_id", sa.Uuid(), sa.ForeignKey("organization.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_by", sa.Uuid(), sa.ForeignKey("app_user.id", ondelete="SET NULL"), nullable=True),
        sa.Column("updated_by", sa.Uuid(), sa.ForeignKey("app_user.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "sales_client",
        *_tenant_columns(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("public_id"),
    )
    op.create_index("ix_sales_client_organization_id", "sales_client", ["organization_id"], unique=False)

    op.create_table(
        "sales_lead",
        *_tenant_columns(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="New"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("budget", sa.Numeric(18, 6), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("assigned_to_id", sa.Uuid(), sa.ForeignKey("app_user.id", ondelete="SET NULL"), nullable=True),
        sa.Column("client_id", sa.Uuid(), sa.ForeignKey("sales_client.id", ondelete="SET NULL"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("public_id"),
    )
    op.create_index("ix_sales_lead_organization_id", "sales_lead", ["organization_id"], unique=False)

    op.create_table(
        "sales_pipeline_deal",
        *_tenant_columns(),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="Qualified"),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("lead_id", sa.Uuid(), sa.ForeignKey("sales_lead.id", ondelete="CASCADE"), nullable=True),
        sa.Column("client_id", sa.Uuid(), sa.ForeignKey("sales_client.id", ondelete="SET NULL"), nullable=True),
        sa.Column("assigned_to_id", sa.Uuid(), sa.ForeignKey("app_user.id", ondelete="SET NULL"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("public_id"),
        sa.UniqueConstraint("lead_id"),
    )
    op.create_index("ix_sales_pipeline_deal_organization_id", "sales_pipeline_deal", ["organization_id"], unique=False)
    op.create_index("ix_sales_pipeline_deal_org_stage", "sales_pipeline_deal", ["organization_id", "stage"], unique=False)

    op.create_table(
        "sales_pipeline_product",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), sa.ForeignKey("sales_pipeline_deal.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(18, 6), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_pipeline_product_deal_id", "sales_pipeline_product", ["deal_id"], unique=False)

    op.create_table(
        "sales_quote",
        *_tenant_columns(),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Pending"),
        sa.Column(
            "pipeline_id",
            sa.Uuid(),
            sa.ForeignKey("sales_pipeline_deal.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("client_id", sa.Uuid(), sa.ForeignKey("sales_client.id", ondelete="SET NULL"), nullable=True),
        sa.Column("discount", sa.Numeric(9, 4), nullable=False),
        sa.Column("tax", sa.Numeric(9, 4), nullable=False),
        sa.Column("shipping_cost", sa.Numeric(18, 6), nullable=False),
        sa.Column("total", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("public_id"),
        sa.UniqueConstraint("pipeline_id"),
    )
    op.create_index("ix_sales_quote_organization_id", "sales_quote", ["organization_id"], unique=False)

    op.create_table(
        "sales_quote_line",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quote_id", sa.Uuid(), sa.ForeignKey("sales_quote.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(18, 6), nullable=False),
        sa.Column("total", sa.Numeric(18, 6), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_quote_line_quote_id", "sales_quote_line", ["quote_id"], unique=False)

    op.create_table(
        "sales_customer",
        *_tenant_columns(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="Active"),
        sa.Column("total_value", sa.Numeric(18, 6), nullable=False),
        sa.Column("last_purchase", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("public_id"),
        sa.UniqueConstraint("organization_id", "email", name="uq_sales_customer_org_email"),
    )
    op.create_index("ix_sales_customer_organization_id", "sales_customer", ["organization_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_sales_customer_organization_id", table_name="sales_customer")
    op.drop_table("sales_customer")
    op.drop_index("ix_sales_quote_line_quote_id", table_name="sales_quote_line")
    op.drop_table("sales_quote_line")
    op.drop_index("ix_sales_quote_organization_id", table_name="sales_quote")
    op.drop_table("sales_quote")
    op.drop_index("ix_sales_pipeline_product_deal_id", table_name="sales_pipeline_product")
    op.drop_table("sales_pipeline_product")
    op.drop_index("ix_sales_pipeline_deal_org_stage", table_name="sales_pipeline_deal")
    op.drop_index("ix_sales_pipeline_deal_organization_id", table_name="sales_pipeline_deal")
    op.drop_table("sales_pipeline_deal")
    op.drop_index("ix_sales_lead_organization_id", table_name="sales_lead")
    op.drop_table("sales_lead")
    op.drop_index("ix_sales_client_organization_id", table_name="sales_client")
    op.drop_table("sales_client")
