"""Add member roles for group administration."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20250407_03"
down_revision = "20250324_02"
branch_labels = None
depends_on = None


MEMBER_ROLE = sa.Enum("ADMIN", "MEMBER", name="member_role")


def upgrade() -> None:
    bind = op.get_bind()
    MEMBER_ROLE.create(bind, checkfirst=True)
    op.add_column(
        "conversation_members",
        sa.Column("role", MEMBER_ROLE, nullable=False, server_default="MEMBER"),
    )
    # Group creators administer their groups
    op.execute(
        """
        UPDATE conversation_members
        SET role = 'ADMIN'
        WHERE user_id = (
            SELECT creator_id FROM conversations
            WHERE conversations.id = conversation_members.conversation_id
        )
        """
    )


def downgrade() -> None:
    op.drop_column("conversation_members", "role")

    bind = op.get_bind()
    MEMBER_ROLE.drop(bind, checkfirst=True)
