"""add pin and role to users

Revision ID: 202602031400
Revises: 202601100900
Create Date: 2026-02-03 14:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202602031400"
down_revision = "202601100900"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("users") as batch_op:
        batch_op.add_column(sa.Column("pin", sa.String(length=4), nullable=True))
        batch_op.add_column(
            sa.Column(
                "pin_enabled",
                sa.Boolean(),
                nullable=False,
                server_default=sa.false(),
            )
        )
        batch_op.add_column(
            sa.Column(
                "role",
                sa.Enum("user", "admin", name="userrole"),
                nullable=False,
                server_default="user",
            )
        )


def downgrade():
    with op.batch_alter_table("users") as batch_op:
        batch_op.drop_column("role")
        batch_op.drop_column("pin_enabled")
        batch_op.drop_column("pin")
