"""one default payment method per user

Revision ID: 20260315_one_default_pm
Revises: 20260301_init_billing
Create Date: 2026-03-15
"""

import sqlalchemy as sa
from alembic import op

revision = "20260315_one_default_pm"
down_revision = "20260301_init_billing"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "uq_payment_methods_user_default",
        "payment_methods",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_default"),
        sqlite_where=sa.text("is_default = 1"),
    )


def downgrade() -> None:
    op.drop_index("uq_payment_methods_user_default", table_name="payment_methods")
