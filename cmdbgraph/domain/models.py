from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres for indexable snapshots; plain JSON keeps sqlite dev/test databases working.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# sqlite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class IdentificationRule(Base):
    __tablename__ = "identification_rules"
    __table_args__ = (
        Index("ix_identification_rules_tenant_category", "tenant_id", "category", "priority"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    category: Mapped[str] = mapped_column(String)
    # Lower priority values are evaluated first.
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Ordered attribute names; order feeds identity hashing.
    criterion_attributes: Mapped[list[str]] = mapped_column(JSONType)
    allow_null: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RelationshipKind(Base):
    __tablename__ = "relationship_kinds"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    # Contained children follow their parent's managed state and lifecycle.
    is_contained: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str | None] = mapped_column(String, nullable=True)


class BaselineDefinition(Base):
    __tablename__ = "baseline_definitions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "category", "name", name="uq_baseline_definitions_name"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    category: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    max_level: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class TenantCmdbSettings(Base):
    __tablename__ = "tenant_cmdb_settings"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    # Inject the implicit default baseline for every category of the tenant.
    default_change_tracking: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class RelatedCi(Base):
    __tablename__ = "related_cis"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "parent_id", "relationship_name", "child_id", name="uq_related_cis_edge"
        ),
        Index("ix_related_cis_tenant_parent", "tenant_id", "parent_id"),
        Index("ix_related_cis_tenant_child", "tenant_id", "child_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    parent_id: Mapped[str] = mapped_column(String)
    parent_category: Mapped[str] = mapped_column(String)
    relationship_name: Mapped[str] = mapped_column(String)
    child_id: Mapped[str] = mapped_column(String)
    child_category: Mapped[str] = mapped_column(String)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class BaselineRecord(Base):
    __tablename__ = "baseline_records"
    __table_args__ = (
        Index(
            "ix_baseline_records_stream",
            "tenant_id",
            "entity_id",
            "baseline_name",
            "operation",
            "created_at",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    category: Mapped[str] = mapped_column(String)
    baseline_name: Mapped[str] = mapped_column(String)
    # insert | update | delete
    operation: Mapped[str] = mapped_column(String)
    snapshot_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class _DetailColumns:
    # Shared scoping columns for per-CI discovery detail rows.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String, index=True)
    category: Mapped[str] = mapped_column(String)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    # Manually entered rows survive re-ingestion.
    manually_created: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class InboundConnection(_DetailColumns, Base):
    __tablename__ = "ci_inbound_connections"

    local_port: Mapped[str | None] = mapped_column(String, nullable=True)
    service_name: Mapped[str | None] = mapped_column(String, nullable=True)
    process_name: Mapped[str | None] = mapped_column(String, nullable=True)
    remote_port: Mapped[str | None] = mapped_column(String, nullable=True)
    remote_ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    connection_protocol: Mapped[str | None] = mapped_column(String, nullable=True)


class OutboundConnection(_DetailColumns, Base):
    __tablename__ = "ci_outbound_connections"

    local_port: Mapped[str | None] = mapped_column(String, nullable=True)
    service_name: Mapped[str | None] = mapped_column(String, nullable=True)
    process_name: Mapped[str | None] = mapped_column(String, nullable=True)
    remote_port: Mapped[str | None] = mapped_column(String, nullable=True)
    remote_ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    connection_protocol: Mapped[str | None] = mapped_column(String, nullable=True)


class RunningProcess(_DetailColumns, Base):
    __tablename__ = "ci_running_processes"

    process_id: Mapped[str | None] = mapped_column(String, nullable=True)
    service_name: Mapped[str | None] = mapped_column(String, nullable=True)
    process_name: Mapped[str | None] = mapped_column(String, nullable=True)
    command: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)


class InstalledPackage(_DetailColumns, Base):
    __tablename__ = "ci_installed_packages"

    application_name: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[str | None] = mapped_column(String, nullable=True)
    installed_date: Mapped[str | None] = mapped_column(String, nullable=True)
    manufacturer: Mapped[str | None] = mapped_column(String, nullable=True)


class ListeningPort(_DetailColumns, Base):
    __tablename__ = "ci_listening_ports"

    local_port: Mapped[str | None] = mapped_column(String, nullable=True)
    service_name: Mapped[str | None] = mapped_column(String, nullable=True)
    process_name: Mapped[str | None] = mapped_column(String, nullable=True)
    connection_protocol: Mapped[str | None] = mapped_column(String, nullable=True)
