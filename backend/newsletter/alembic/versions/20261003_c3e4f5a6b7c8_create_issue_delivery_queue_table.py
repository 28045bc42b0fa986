"""create issue_delivery_queue table

Revision ID: c3e4f5a6b7c8
Revises: b7d8e9f0a1b2
Create Date: 2026-10-03 10:30:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "c3e4f5a6b7c8"
down_revision = "b7d8e9f0a1b2"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "issue_delivery_queue",
        sa.Column("newsletter_issue_id", sa.String(length=36), nullable=False),
        sa.Column("subscriber_email", sa.String(length=255), nullable=False),
        sa.ForeignKeyConstraint(
            ["newsletter_issue_id"],
            ["newsletter_issues.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("newsletter_issue_id", "subscriber_email"),
    )


def downgrade() -> None:
    op.drop_table("issue_delivery_queue")
