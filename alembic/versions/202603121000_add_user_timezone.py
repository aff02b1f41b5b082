"""add timezone to users

Revision ID: 202603121000
Revises: 202602031400
Create Date: 2026-03-12 10:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202603121000"
down_revision = "202602031400"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("users") as batch_op:
        batch_op.add_column(
            sa.Column(
                "timezone",
                sa.String(length=64),
                nullable=False,
                server_default="Asia/Jakarta",
            )
        )


def downgrade():
    with op.batch_alter_table("users") as batch_op:
        batch_op.drop_column("timezone")
