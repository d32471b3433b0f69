"""Add grouped notifications."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20250324_02"
down_revision = "20250310_01"
branch_labels = None
depends_on = None


NOTIFICATION_TYPE = sa.Enum(
    "FOLLOW",
    "FOLLOW_REQUEST",
    "FOLLOW_ACCEPTED",
    "FOLLOW_REJECTED",
    "REACTION",
    "COMMENT",
    "REPLY",
    "REPOST",
    "MESSAGE",
    name="notification_type",
)
NOTIFICATION_TARGET_TYPE = sa.Enum(
    "USER", "POST", "COMMENT", "MESSAGE", "CONVERSATION", name="notification_target_type"
)


def upgrade() -> None:
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("type", NOTIFICATION_TYPE, nullable=False),
        sa.Column("target_type", NOTIFICATION_TARGET_TYPE, nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=False),
        sa.Column("window_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint(
            "user_id",
            "type",
            "target_type",
            "target_id",
            "window_index",
            name="uq_notification_group",
        ),
        mysql_charset="utf8mb4",
    )
    op.create_index(
        "ix_notifications_user_created_at", "notifications", ["user_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_notifications_user_created_at", table_name="notifications")
    op.drop_table("notifications")

    bind = op.get_bind()
    NOTIFICATION_TARGET_TYPE.drop(bind, checkfirst=True)
    NOTIFICATION_TYPE.drop(bind, checkfirst=True)
