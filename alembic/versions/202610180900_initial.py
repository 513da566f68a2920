"""initial ledger schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("color", sa.String(length=9)),
        sa.Column(
            "kind",
            sa.Enum("standard", "reimbursable", name="accountkind"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_accounts_name", "accounts", ["name"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
    )
    op.create_index(
        "uq_categories_name_fold",
        "categories",
        [sa.text("fold(name)")],
        unique=True,
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("note", sa.Text()),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_transactions_account_date_id",
        "transactions",
        ["account_id", "date", "id"],
    )
    op.create_index("ix_transactions_date_id", "transactions", ["date", "id"])
    op.create_index("ix_transactions_category_id", "transactions", ["category_id"])


def downgrade():
    op.drop_index("ix_transactions_category_id", table_name="transactions")
    op.drop_index("ix_transactions_date_id", table_name="transactions")
    op.drop_index("ix_transactions_account_date_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("uq_categories_name_fold", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_accounts_name", table_name="accounts")
    op.drop_table("accounts")
