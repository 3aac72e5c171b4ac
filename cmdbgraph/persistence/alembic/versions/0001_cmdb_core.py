"""cmdb core tables

Revision ID: 0001_cmdb_core
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_cmdb_core"
down_revision = None
branch_labels = None
depends_on = None

_DETAIL_TABLES = {
    "ci_inbound_connections": (
        "local_port",
        "service_name",
        "process_name",
        "remote_port",
        "remote_ip_address",
        "connection_protocol",
    ),
    "ci_outbound_connections": (
        "local_port",
        "service_name",
        "process_name",
        "remote_port",
        "remote_ip_address",
        "connection_protocol",
    ),
    "ci_running_processes": ("process_id", "service_name", "process_name", "command", "description"),
    "ci_installed_packages": ("application_name", "version", "installed_date", "manufacturer"),
    "ci_listening_ports": ("local_port", "service_name", "process_name", "connection_protocol"),
}


def upgrade() -> None:
    op.create_table(
        "identification_rules",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("criterion_attributes", postgresql.JSONB(), nullable=False),
        sa.Column("allow_null", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_identification_rules_tenant_id", "identification_rules", ["tenant_id"])
    op.create_index(
        "ix_identification_rules_tenant_category",
        "identification_rules",
        ["tenant_id", "category", "priority"],
    )

    op.create_table(
        "relationship_kinds",
        sa.Column("name", sa.String(), primary_key=True),
        sa.Column("is_contained", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.String(), nullable=True),
    )

    op.create_table(
        "baseline_definitions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("max_level", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("tenant_id", "category", "name", name="uq_baseline_definitions_name"),
    )
    op.create_index("ix_baseline_definitions_tenant_id", "baseline_definitions", ["tenant_id"])

    op.create_table(
        "tenant_cmdb_settings",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("default_change_tracking", sa.Boolean(), nullable=False, server_default=sa.false()),
    )

    op.create_table(
        "related_cis",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=False),
        sa.Column("parent_category", sa.String(), nullable=False),
        sa.Column("relationship_name", sa.String(), nullable=False),
        sa.Column("child_id", sa.String(), nullable=False),
        sa.Column("child_category", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # Backs idempotent edge creation under concurrent writers.
        sa.UniqueConstraint(
            "tenant_id", "parent_id", "relationship_name", "child_id", name="uq_related_cis_edge"
        ),
    )
    op.create_index("ix_related_cis_tenant_parent", "related_cis", ["tenant_id", "parent_id"])
    op.create_index("ix_related_cis_tenant_child", "related_cis", ["tenant_id", "child_id"])

    op.create_table(
        "baseline_records",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("baseline_name", sa.String(), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("snapshot_json", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_baseline_records_stream",
        "baseline_records",
        ["tenant_id", "entity_id", "baseline_name", "operation", "created_at"],
    )

    for table_name, columns in _DETAIL_TABLES.items():
        op.create_table(
            table_name,
            sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
            sa.Column("tenant_id", sa.String(), nullable=False),
            sa.Column("entity_id", sa.String(), nullable=False),
            sa.Column("category", sa.String(), nullable=False),
            sa.Column("ip_address", sa.String(), nullable=True),
            sa.Column("manually_created", sa.Boolean(), nullable=False, server_default=sa.false()),
            *(sa.Column(name, sa.String(), nullable=True) for name in columns),
        )
        op.create_index(f"ix_{table_name}_entity_id", table_name, ["entity_id"])


def downgrade() -> None:
    for table_name in reversed(list(_DETAIL_TABLES)):
        op.drop_index(f"ix_{table_name}_entity_id", table_name=table_name)
        op.drop_table(table_name)
    op.drop_index("ix_baseline_records_stream", table_name="baseline_records")
    op.drop_table("baseline_records")
    op.drop_index("ix_related_cis_tenant_child", table_name="related_cis")
    op.drop_index("ix_related_cis_tenant_parent", table_name="related_cis")
    op.drop_table("related_cis")
    op.drop_table("tenant_cmdb_settings")
    op.drop_index("ix_baseline_definitions_tenant_id", table_name="baseline_definitions")
    op.drop_table("baseline_definitions")
    op.drop_table("relationship_kinds")
    op.drop_index("ix_identification_rules_tenant_category", table_name="identification_rules")
    op.drop_index("ix_identification_rules_tenant_id", table_name="identification_rules")
    op.drop_table("identification_rules")
