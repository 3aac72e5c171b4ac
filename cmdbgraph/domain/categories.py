from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
import re
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    BigInteger,
    Index,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)

from cmdbgraph.core.errors import CmdbValidationError, UnknownCategoryError
from cmdbgraph.domain.models import JSONType


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Columns every category table carries; payloads may set the non-identity ones.
SYSTEM_COLUMNS: tuple[str, ...] = (
    "identity",
    "tenant_id",
    "category",
    "managed",
    "status",
    "last_discovered_at",
    "discovery_run_id",
    "last_modified_at",
    "created_at",
)
PAYLOAD_SYSTEM_KEYS = frozenset(
    {"category", "managed", "status", "last_discovered_at", "discovery_run_id", "last_modified_at", "created_at"}
)

# Bookkeeping attributes: differences here are written but never count as a material change.
BOOKKEEPING_ATTRIBUTES = frozenset(
    {
        "source",
        "created_by",
        "description",
        "display_name",
        "label",
        "asset_id",
        "last_modified_by",
        "asset_tag",
        "installed_date",
        "ci_role",
        "config_last_modified_time",
        "contact_details",
        "last_audit_status",
        "last_audit_time",
        "state_time",
        "state",
        "client_name",
        "ci_owner",
        "cinum",
        "ci_subcategory",
        "location",
    }
).union(SYSTEM_COLUMNS)

ATTRIBUTE_TYPES: dict[str, Any] = {
    "string": String,
    "integer": BigInteger,
    "number": Float,
    "boolean": Boolean,
    "json": lambda: JSONType,
    "timestamp": lambda: DateTime(timezone=True),
}


def validate_identifier(value: str | None, *, kind: str) -> str:
    # Category and attribute names end up as table/column names.
    if not value or not _IDENTIFIER.match(value):
        raise CmdbValidationError(f"Invalid {kind} name: {value!r}")
    return value


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise CmdbValidationError(f"Invalid timestamp value: {value!r}") from exc
    else:
        raise CmdbValidationError(f"Invalid timestamp value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_value(attr_type: str, value: Any) -> Any:
    """Convert a payload value to the Python type stored for ``attr_type``.

    Empty strings stay as-is for string columns and become ``None`` for typed
    columns, so "not discovered" never turns into ``0`` or ``False``.
    """
    if value is None:
        return None
    if attr_type == "string":
        if isinstance(value, (dict, list)):
            return json.dumps(value, sort_keys=True)
        return str(value)
    if attr_type == "json":
        return value
    if isinstance(value, str) and value == "":
        return None
    try:
        if attr_type == "integer":
            return int(value)
        if attr_type == "number":
            return float(value)
        if attr_type == "boolean":
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in {"true", "1", "yes"}:
                    return True
                if lowered in {"false", "0", "no"}:
                    return False
                raise ValueError(value)
            return bool(value)
    except (TypeError, ValueError) as exc:
        raise CmdbValidationError(f"Cannot store {value!r} as {attr_type}") from exc
    if attr_type == "timestamp":
        return _parse_timestamp(value)
    raise CmdbValidationError(f"Unsupported attribute type: {attr_type}")


@dataclass(frozen=True)
class CategorySchema:
    name: str
    # Ordered attribute name -> type; order is preserved in returned CIs.
    attributes: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_identifier(self.name, kind="category")
        for attr_name, attr_type in self.attributes.items():
            validate_identifier(attr_name, kind="attribute")
            if attr_name in SYSTEM_COLUMNS:
                raise CmdbValidationError(f"Attribute {attr_name!r} shadows a system column")
            if attr_type not in ATTRIBUTE_TYPES:
                raise CmdbValidationError(f"Unsupported attribute type {attr_type!r} for {attr_name!r}")

    @property
    def key(self) -> str:
        return self.name.lower()

    @property
    def table_name(self) -> str:
        return f"ci_{self.key}"


@dataclass
class ConfigurationItem:
    identity: str
    tenant_id: str
    category: str
    attributes: dict[str, Any]
    managed: bool = False
    status: str | None = None
    last_discovered_at: datetime | None = None
    discovery_run_id: str | None = None
    last_modified_at: datetime | None = None
    created_at: datetime | None = None

    def value(self, name: str) -> Any:
        # Uniform access across system columns and schema attributes.
        if name in SYSTEM_COLUMNS:
            return getattr(self, name)
        return self.attributes.get(name)

    def snapshot(self) -> dict[str, Any]:
        # JSON-safe copy used for baseline records and API output.
        payload: dict[str, Any] = {name: getattr(self, name) for name in SYSTEM_COLUMNS}
        payload.update(self.attributes)
        return {key: _json_safe(value) for key, value in payload.items()}


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _build_table(schema: CategorySchema, metadata: MetaData) -> Table:
    columns: list[Column] = [
        Column("identity", String, primary_key=True),
        Column("tenant_id", String, nullable=False),
        Column("category", String, nullable=False),
        Column("managed", Boolean, nullable=False, default=False),
        Column("status", String, nullable=True),
        Column("last_discovered_at", DateTime(timezone=True), nullable=True),
        Column("discovery_run_id", String, nullable=True),
        Column("last_modified_at", DateTime(timezone=True), nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=True),
    ]
    for attr_name, attr_type in schema.attributes.items():
        factory = ATTRIBUTE_TYPES[attr_type]
        columns.append(Column(attr_name, factory(), nullable=True))
    return Table(
        schema.table_name,
        metadata,
        *columns,
        UniqueConstraint("tenant_id", "category", "identity", name=f"uq_{schema.table_name}_identity"),
        Index(f"ix_{schema.table_name}_tenant", "tenant_id"),
    )


class CategoryRegistry:
    """Typed registry of CI categories and the tables that store them.

    Each registered :class:`CategorySchema` gets one SQLAlchemy ``Table`` on the
    registry's own ``MetaData``. Lookups are case-insensitive so discovery
    payloads can say ``Server`` or ``server``.
    """

    def __init__(self, schemas: list[CategorySchema] | None = None) -> None:
        self.metadata = MetaData()
        self._schemas: dict[str, CategorySchema] = {}
        self._tables: dict[str, Table] = {}
        for schema in schemas or []:
            self.register(schema)

    def register(self, schema: CategorySchema) -> Table:
        if schema.key in self._schemas:
            raise CmdbValidationError(f"Category already registered: {schema.name}")
        table = _build_table(schema, self.metadata)
        self._schemas[schema.key] = schema
        self._tables[schema.key] = table
        return table

    def schema(self, category: str | None) -> CategorySchema:
        validate_identifier(category, kind="category")
        schema = self._schemas.get(category.lower())
        if schema is None:
            raise UnknownCategoryError(f"Unknown category: {category}")
        return schema

    def table(self, category: str) -> Table:
        return self._tables[self.schema(category).key]

    def categories(self) -> list[str]:
        return [schema.name for schema in self._schemas.values()]

    async def create_all(self, conn) -> None:
        # Category tables normally pre-exist; dev and test databases create them here.
        await conn.run_sync(self.metadata.create_all)


def load_registry(path: str | Path) -> CategoryRegistry:
    # Document shape: {"categories": [{"name": "Server", "attributes": {"hostname": "string"}}]}
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    schemas = [
        CategorySchema(name=item["name"], attributes=dict(item.get("attributes") or {}))
        for item in raw.get("categories", [])
    ]
    return CategoryRegistry(schemas)
