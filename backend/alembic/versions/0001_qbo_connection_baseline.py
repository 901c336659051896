"""Baseline schema: credentials, teams, memberships, audit entries, OAuth state.

On PostgreSQL the credential table also gets a row-level security policy
keyed on the ``app.tenant_id`` setting, which ``SqlCredentialStore`` pins per
transaction. Maintenance jobs set ``app.maintenance`` instead.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision = "0001_qbo_connection_baseline"
down_revision = None
branch_labels = None
depends_on = None


CREDENTIAL_POLICY = "qbo_credentials_tenant_isolation"


def upgrade() -> None:
    bind = op.get_bind()
    inspector = inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "qbo_credentials" not in existing_tables:
        op.create_table(
            "qbo_credentials",
            sa.Column("tenant_id", sa.String(length=255), primary_key=True),
            sa.Column("encrypted_access_token", sa.Text(), nullable=False),
            sa.Column("encrypted_refresh_token", sa.Text(), nullable=False),
            sa.Column("realm_id", sa.String(length=128), nullable=True),
            sa.Column("access_expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("refresh_expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column(
                "status", sa.String(length=32), nullable=False, server_default="active"
            ),
            sa.Column(
                "revoked", sa.Boolean(), nullable=False, server_default=sa.false()
            ),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("connection_id", sa.String(length=64), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        )

    if "teams" not in existing_tables:
        op.create_table(
            "teams",
            sa.Column("id", sa.String(length=255), primary_key=True),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("owner_user_id", sa.String(length=255), nullable=False),
            sa.Column("connection_tenant_id", sa.String(length=255), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index(
            "ix_teams_connection_tenant_id", "teams", ["connection_tenant_id"]
        )

    if "team_memberships" not in existing_tables:
        op.create_table(
            "team_memberships",
            sa.Column("id", sa.String(length=255), primary_key=True),
            sa.Column(
                "team_id",
                sa.String(length=255),
                sa.ForeignKey("teams.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("user_id", sa.String(length=255), nullable=False),
            sa.Column(
                "role", sa.String(length=32), nullable=False, server_default="viewer"
            ),
            sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("team_id", "user_id", name="uq_team_member"),
        )
        op.create_index(
            "ix_team_memberships_user_id", "team_memberships", ["user_id"]
        )

    if "audit_entries" not in existing_tables:
        op.create_table(
            "audit_entries",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("actor_user_id", sa.String(length=255), nullable=False),
            sa.Column("team_id", sa.String(length=255), nullable=True),
            sa.Column("action", sa.String(length=64), nullable=False),
            sa.Column("target_kind", sa.String(length=64), nullable=False),
            sa.Column("target_id", sa.String(length=255), nullable=True),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("payload_digest", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index(
            "ix_audit_entries_actor_user_id", "audit_entries", ["actor_user_id"]
        )
        op.create_index("ix_audit_entries_team_id", "audit_entries", ["team_id"])
        op.create_index("ix_audit_entries_created_at", "audit_entries", ["created_at"])

    if "oauth_states" not in existing_tables:
        op.create_table(
            "oauth_states",
            sa.Column("state_digest", sa.String(length=64), primary_key=True),
            sa.Column("team_id", sa.String(length=255), nullable=False),
            sa.Column("user_id", sa.String(length=255), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )

    if bind.dialect.name == "postgresql":
        op.execute("ALTER TABLE qbo_credentials ENABLE ROW LEVEL SECURITY")
        op.execute("ALTER TABLE qbo_credentials FORCE ROW LEVEL SECURITY")
        op.execute(
            f"""
            CREATE POLICY {CREDENTIAL_POLICY} ON qbo_credentials
            USING (
                tenant_id = current_setting('app.tenant_id', true)
                OR current_setting('app.maintenance', true) = 'on'
            )
            WITH CHECK (tenant_id = current_setting('app.tenant_id', true))
            """
        )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute(f"DROP POLICY IF EXISTS {CREDENTIAL_POLICY} ON qbo_credentials")
    op.drop_table("oauth_states")
    op.drop_index("ix_audit_entries_created_at", table_name="audit_entries")
    op.drop_index("ix_audit_entries_team_id", table_name="audit_entries")
    op.drop_index("ix_audit_entries_actor_user_id", table_name="audit_entries")
    op.drop_table("audit_entries")
    op.drop_index("ix_team_memberships_user_id", table_name="team_memberships")
    op.drop_table("team_memberships")
    op.drop_index("ix_teams_connection_tenant_id", table_name="teams")
    op.drop_table("teams")
    op.drop_table("qbo_credentials")
