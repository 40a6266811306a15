"""
SQLAlchemy Core table definitions.

Three metadata collections are defined:

- source_metadata: the subset of the legacy homeserver (Synapse) schema that
  is read by the migration. Only ever queried, never created in production.
- destination_metadata: the subset of the authentication service (MAS)
  schema that the migration writes to. Owned by the destination service.
- state_metadata: the migration's own bookkeeping tables, created in the
  destination database by the migrator when missing.

Timestamps in the legacy schema are integer epoch values (seconds for
users.creation_ts, milliseconds everywhere else).
"""

from __future__ import annotations

import sqlalchemy as sa

source_metadata = sa.MetaData()
destination_metadata = sa.MetaData()
state_metadata = sa.MetaData()

# ---------------------------------------------------------------------------
# Legacy (Synapse) schema
# ---------------------------------------------------------------------------

synapse_schema_version = sa.Table(
    "schema_version",
    source_metadata,
    sa.Column("lock", sa.String(1), primary_key=True, server_default="X"),
    sa.Column("version", sa.Integer, nullable=False),
    sa.Column("upgraded", sa.Boolean, nullable=False, server_default=sa.false()),
)

synapse_users = sa.Table(
    "users",
    source_metadata,
    sa.Column("name", sa.Text, primary_key=True),
    sa.Column("password_hash", sa.Text),
    sa.Column("creation_ts", sa.BigInteger),
    sa.Column("admin", sa.SmallInteger, nullable=False, server_default="0"),
    sa.Column("is_guest", sa.SmallInteger, nullable=False, server_default="0"),
    sa.Column("appservice_id", sa.Text),
    sa.Column("deactivated", sa.SmallInteger, nullable=False, server_default="0"),
    sa.Column("locked", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("approved", sa.Boolean),
)

synapse_erased_users = sa.Table(
    "erased_users",
    source_metadata,
    sa.Column("user_id", sa.Text, primary_key=True),
)

synapse_user_threepids = sa.Table(
    "user_threepids",
    source_metadata,
    sa.Column("user_id", sa.Text, nullable=False),
    sa.Column("medium", sa.Text, nullable=False),
    sa.Column("address", sa.Text, nullable=False),
    sa.Column("validated_at", sa.BigInteger, nullable=False),
    sa.Column("added_at", sa.BigInteger, nullable=False),
    sa.UniqueConstraint("medium", "address", name="medium_address"),
)

synapse_user_external_ids = sa.Table(
    "user_external_ids",
    source_metadata,
    sa.Column("auth_provider", sa.Text, nullable=False),
    sa.Column("external_id", sa.Text, nullable=False),
    sa.Column("user_id", sa.Text, nullable=False),
    sa.UniqueConstraint("auth_provider", "external_id"),
)

synapse_devices = sa.Table(
    "devices",
    source_metadata,
    sa.Column("user_id", sa.Text, nullable=False),
    sa.Column("device_id", sa.Text, nullable=False),
    sa.Column("display_name", sa.Text),
    sa.Column("last_seen", sa.BigInteger),
    sa.Column("ip", sa.Text),
    sa.Column("user_agent", sa.Text),
    sa.Column("hidden", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.UniqueConstraint("user_id", "device_id", name="device_uniqueness"),
)

synapse_access_tokens = sa.Table(
    "access_tokens",
    source_metadata,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("user_id", sa.Text, nullable=False),
    sa.Column("device_id", sa.Text),
    sa.Column("token", sa.Text, nullable=False, unique=True),
    sa.Column("valid_until_ms", sa.BigInteger),
    sa.Column("puppets_user_id", sa.Text),
    sa.Column("last_validated", sa.BigInteger),
    sa.Column("refresh_token_id", sa.BigInteger),
    sa.Column("used", sa.Boolean),
)

synapse_refresh_tokens = sa.Table(
    "refresh_tokens",
    source_metadata,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("user_id", sa.Text, nullable=False),
    sa.Column("device_id", sa.Text, nullable=False),
    sa.Column("token", sa.Text, nullable=False, unique=True),
    sa.Column("next_token_id", sa.BigInteger),
)

# ---------------------------------------------------------------------------
# Destination (MAS) schema
# ---------------------------------------------------------------------------

mas_migrations = sa.Table(
    "_sqlx_migrations",
    destination_metadata,
    sa.Column("version", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("description", sa.Text, nullable=False, server_default=""),
    sa.Column("success", sa.Boolean, nullable=False),
)

mas_users = sa.Table(
    "users",
    destination_metadata,
    sa.Column("user_id", sa.Uuid, primary_key=True),
    sa.Column("username", sa.Text, nullable=False, unique=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("locked_at", sa.DateTime(timezone=True)),
    sa.Column("can_request_admin", sa.Boolean, nullable=False, server_default=sa.false()),
)

mas_user_passwords = sa.Table(
    "user_passwords",
    destination_metadata,
    sa.Column("user_password_id", sa.Uuid, primary_key=True),
    sa.Column("user_id", sa.Uuid, sa.ForeignKey("users.user_id"), nullable=False),
    sa.Column("hashed_password", sa.Text, nullable=False),
    sa.Column("version", sa.Integer, nullable=False),
    sa.Column("upgraded_from_id", sa.Uuid, sa.ForeignKey("user_passwords.user_password_id")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)

mas_user_emails = sa.Table(
    "user_emails",
    destination_metadata,
    sa.Column("user_email_id", sa.Uuid, primary_key=True),
    sa.Column("user_id", sa.Uuid, sa.ForeignKey("users.user_id"), nullable=False),
    sa.Column("email", sa.Text, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("confirmed_at", sa.DateTime(timezone=True)),
    sa.Column("is_primary", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.UniqueConstraint("user_id", "email", name="user_emails_user_email_unique"),
)

mas_unsupported_third_party_ids = sa.Table(
    "user_unsupported_third_party_ids",
    destination_metadata,
    sa.Column("user_id", sa.Uuid, sa.ForeignKey("users.user_id"), primary_key=True),
    sa.Column("medium", sa.Text, primary_key=True),
    sa.Column("address", sa.Text, primary_key=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)

mas_upstream_oauth_providers = sa.Table(
    "upstream_oauth_providers",
    destination_metadata,
    sa.Column("upstream_oauth_provider_id", sa.Uuid, primary_key=True),
    sa.Column("issuer", sa.Text),
    sa.Column("human_name", sa.Text),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)

mas_upstream_oauth_links = sa.Table(
    "upstream_oauth_links",
    destination_metadata,
    sa.Column("upstream_oauth_link_id", sa.Uuid, primary_key=True),
    sa.Column(
        "upstream_oauth_provider_id",
        sa.Uuid,
        sa.ForeignKey("upstream_oauth_providers.upstream_oauth_provider_id"),
        nullable=False,
    ),
    sa.Column("user_id", sa.Uuid, sa.ForeignKey("users.user_id")),
    sa.Column("subject", sa.Text, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint(
        "upstream_oauth_provider_id", "subject", name="upstream_oauth_links_subject_unique"
    ),
)

mas_compat_sessions = sa.Table(
    "compat_sessions",
    destination_metadata,
    sa.Column("compat_session_id", sa.Uuid, primary_key=True),
    sa.Column("user_id", sa.Uuid, sa.ForeignKey("users.user_id"), nullable=False),
    sa.Column("device_id", sa.Text),
    sa.Column("human_name", sa.Text),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("finished_at", sa.DateTime(timezone=True)),
    sa.Column("is_synapse_admin", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("last_active_at", sa.DateTime(timezone=True)),
    sa.Column("last_active_ip", sa.Text),
    sa.Column("user_agent", sa.Text),
)

mas_compat_access_tokens = sa.Table(
    "compat_access_tokens",
    destination_metadata,
    sa.Column("compat_access_token_id", sa.Uuid, primary_key=True),
    sa.Column(
        "compat_session_id",
        sa.Uuid,
        sa.ForeignKey("compat_sessions.compat_session_id"),
        nullable=False,
    ),
    sa.Column("access_token", sa.Text, nullable=False, unique=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True)),
)

mas_compat_refresh_tokens = sa.Table(
    "compat_refresh_tokens",
    destination_metadata,
    sa.Column("compat_refresh_token_id", sa.Uuid, primary_key=True),
    sa.Column(
        "compat_session_id",
        sa.Uuid,
        sa.ForeignKey("compat_sessions.compat_session_id"),
        nullable=False,
    ),
    sa.Column(
        "compat_access_token_id",
        sa.Uuid,
        sa.ForeignKey("compat_access_tokens.compat_access_token_id"),
        nullable=False,
    ),
    sa.Column("refresh_token", sa.Text, nullable=False, unique=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)

# ---------------------------------------------------------------------------
# Migration state
# ---------------------------------------------------------------------------

id_mappings = sa.Table(
    "syn2mas_id_mappings",
    state_metadata,
    sa.Column("namespace", sa.Text, primary_key=True),
    sa.Column("legacy_id", sa.Text, primary_key=True),
    sa.Column("destination_id", sa.Uuid, nullable=False, unique=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)

checkpoints = sa.Table(
    "syn2mas_checkpoints",
    state_metadata,
    sa.Column("entity_type", sa.Text, primary_key=True),
    sa.Column("last_key", sa.Text),
    sa.Column("rows_committed", sa.BigInteger, nullable=False, server_default="0"),
    sa.Column("committed_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("completed_at", sa.DateTime(timezone=True)),
)

STATE_TABLES = (id_mappings.name, checkpoints.name)

# Destination tables in foreign key order; rows of a batch are inserted in
# this order and verification walks it in reverse.
DESTINATION_WRITE_ORDER: tuple[str, ...] = tuple(
    table.name
    for table in destination_metadata.sorted_tables
    if table.name not in (mas_migrations.name, mas_upstream_oauth_providers.name)
)


# Destination table holding the rows identified by each mapping namespace.
NAMESPACE_TABLES: dict[str, str] = {
    "users": mas_users.name,
    "user_passwords": mas_user_passwords.name,
    "user_emails": mas_user_emails.name,
    "upstream_oauth_links": mas_upstream_oauth_links.name,
    "devices": mas_compat_sessions.name,
    "token_sessions": mas_compat_sessions.name,
    "access_tokens": mas_compat_access_tokens.name,
    "refresh_tokens": mas_compat_refresh_tokens.name,
}


def destination_table(name: str) -> sa.Table:
    """Look up a destination table by name."""
    return destination_metadata.tables[name]


__all__ = [
    "DESTINATION_WRITE_ORDER",
    "NAMESPACE_TABLES",
    "STATE_TABLES",
    "checkpoints",
    "destination_metadata",
    "destination_table",
    "id_mappings",
    "mas_compat_access_tokens",
    "mas_compat_refresh_tokens",
    "mas_compat_sessions",
    "mas_migrations",
    "mas_unsupported_third_party_ids",
    "mas_upstream_oauth_links",
    "mas_upstream_oauth_providers",
    "mas_user_emails",
    "mas_user_passwords",
    "mas_users",
    "source_metadata",
    "state_metadata",
    "synapse_access_tokens",
    "synapse_devices",
    "synapse_erased_users",
    "synapse_refresh_tokens",
    "synapse_schema_version",
    "synapse_user_external_ids",
    "synapse_user_threepids",
    "synapse_users",
]
