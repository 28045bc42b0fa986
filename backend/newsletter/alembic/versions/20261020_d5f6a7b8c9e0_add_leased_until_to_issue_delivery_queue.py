"""add leased_until to issue_delivery_queue

Revision ID: d5f6a7b8c9e0
Revises: c3e4f5a6b7c8
Create Date: 2026-10-20 11:15:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "d5f6a7b8c9e0"
down_revision = "c3e4f5a6b7c8"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("issue_delivery_queue") as batch_op:
        batch_op.add_column(sa.Column("leased_until", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("issue_delivery_queue") as batch_op:
        batch_op.drop_column("leased_until")
