"""investment assets and holdings

Revision ID: 202610201000
Revises: 202610191200
Create Date: 2026-10-20 10:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610201000"
down_revision = "202610191200"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "assets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "income_type",
            sa.Enum("fixed", "variable", name="assetincometype"),
            nullable=False,
        ),
        sa.Column("color", sa.String(length=7)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_asset_user_name"),
    )

    op.create_table(
        "asset_holdings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "asset_id",
            sa.Integer(),
            sa.ForeignKey("assets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "current_value_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "asset_id", name="uq_holding_user_asset"),
        sa.CheckConstraint(
            "current_value_cents > 0", name="ck_holding_value_positive"
        ),
    )

    # free-text asset ids from the first schema cannot be mapped to rows
    op.execute("UPDATE transactions SET asset_id = NULL")
    with op.batch_alter_table("transactions") as batch_op:
        batch_op.alter_column(
            "asset_id",
            existing_type=sa.String(length=64),
            type_=sa.Integer(),
            existing_nullable=True,
        )
        batch_op.create_foreign_key(
            "fk_transactions_asset_id", "assets", ["asset_id"], ["id"]
        )


def downgrade():
    with op.batch_alter_table("transactions") as batch_op:
        batch_op.drop_constraint("fk_transactions_asset_id", type_="foreignkey")
        batch_op.alter_column(
            "asset_id",
            existing_type=sa.Integer(),
            type_=sa.String(length=64),
            existing_nullable=True,
        )
    op.drop_table("asset_holdings")
    op.drop_table("assets")
