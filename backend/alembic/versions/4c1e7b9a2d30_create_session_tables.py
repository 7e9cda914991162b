"""create session, renewal credential and revocation tables

Revision ID: 4c1e7b9a2d30
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4c1e7b9a2d30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("username", sa.String(length=50), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("roles", sa.Text(), nullable=True),
        sa.Column("password_changed_at", sa.String(length=26), nullable=True),
        sa.Column("created_at", sa.String(length=26), nullable=True),
        sa.Column("updated_at", sa.String(length=26), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_users_username"), ["username"], unique=True)
        batch_op.create_index(batch_op.f("ix_users_email"), ["email"], unique=True)

    op.create_table(
        "user_sessions",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("device_info", sa.Text(), nullable=False),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_activity_at", sa.String(length=26), nullable=False),
        sa.Column("created_at", sa.String(length=26), nullable=False),
        sa.Column("expires_at", sa.String(length=26), nullable=False),
        sa.Column("deactivated_at", sa.String(length=26), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("user_sessions", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_user_sessions_user_id"), ["user_id"], unique=False)
        batch_op.create_index("ix_user_sessions_user_active", ["user_id", "is_active"], unique=False)
        batch_op.create_index("ix_user_sessions_expires_at", ["expires_at"], unique=False)
        batch_op.create_index("ix_user_sessions_last_activity_at", ["last_activity_at"], unique=False)

    op.create_table(
        "renewal_credentials",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("device_info", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_used_at", sa.String(length=26), nullable=True),
        sa.Column("created_at", sa.String(length=26), nullable=False),
        sa.Column("updated_at", sa.String(length=26), nullable=False),
        sa.Column("expires_at", sa.String(length=26), nullable=False),
        sa.Column("rotated_from_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["session_id"], ["user_sessions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rotated_from_id"], ["renewal_credentials.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("renewal_credentials", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_renewal_credentials_fingerprint"), ["fingerprint"], unique=True)
        batch_op.create_index(
            "ix_renewal_credentials_session_active", ["session_id", "is_active"], unique=False
        )
        batch_op.create_index("ix_renewal_credentials_user_active", ["user_id", "is_active"], unique=False)
        batch_op.create_index("ix_renewal_credentials_expires_at", ["expires_at"], unique=False)

    op.create_table(
        "revocation_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("credential_kind", sa.Enum("access", "renewal", name="credentialkind", native_enum=False), nullable=False),
        sa.Column("expiry_of_original", sa.String(length=26), nullable=False),
        sa.Column("blacklisted_at", sa.String(length=26), nullable=False),
        sa.Column("reason", sa.String(length=100), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("session_id", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("revocation_entries", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_revocation_entries_fingerprint"), ["fingerprint"], unique=True)
        batch_op.create_index("ix_revocation_entries_expiry", ["expiry_of_original"], unique=False)
        batch_op.create_index("ix_revocation_entries_user", ["user_id"], unique=False)
        batch_op.create_index("ix_revocation_entries_session", ["session_id"], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("revocation_entries")
    op.drop_table("renewal_credentials")
    op.drop_table("user_sessions")
    op.drop_table("users")
