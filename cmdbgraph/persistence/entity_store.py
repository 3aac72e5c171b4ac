from __future__ import annotations

from datetime import datetime
from functools import lru_cache
import logging
from typing import Any, Mapping

from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.core.config import get_settings
from cmdbgraph.core.errors import CmdbValidationError
from cmdbgraph.domain.categories import (
    PAYLOAD_SYSTEM_KEYS,
    CategoryRegistry,
    CategorySchema,
    ConfigurationItem,
    coerce_value,
    load_registry,
)
from cmdbgraph.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)

_SYSTEM_TYPES = {
    "category": "string",
    "managed": "boolean",
    "status": "string",
    "last_discovered_at": "timestamp",
    "discovery_run_id": "string",
    "last_modified_at": "timestamp",
    "created_at": "timestamp",
}


class CategoryTable:
    """Current-state rows for one CI category, always scoped by tenant."""

    def __init__(self, schema: CategorySchema, table: Table) -> None:
        self.schema = schema
        self.table = table

    @property
    def category(self) -> str:
        return self.schema.name

    def coerce(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        # Normalize payload values to column types; unknown keys are rejected or dropped.
        settings = get_settings()
        coerced: dict[str, Any] = {}
        for key, value in attributes.items():
            if key == "identity" or key == "tenant_id":
                continue
            if key in PAYLOAD_SYSTEM_KEYS:
                coerced[key] = coerce_value(_SYSTEM_TYPES[key], value)
                continue
            attr_type = self.schema.attributes.get(key)
            if attr_type is None:
                if settings.cmdb_reject_unknown_attributes:
                    raise CmdbValidationError(
                        f"Unknown attribute {key!r} for category {self.schema.name}"
                    )
                logger.warning("ci_attribute_dropped category=%s attribute=%s", self.schema.name, key)
                continue
            coerced[key] = coerce_value(attr_type, value)
        return coerced

    def _to_item(self, row: Mapping[str, Any]) -> ConfigurationItem:
        attributes = {name: row[name] for name in self.schema.attributes}
        return ConfigurationItem(
            identity=row["identity"],
            tenant_id=row["tenant_id"],
            category=row["category"],
            attributes=attributes,
            managed=bool(row["managed"]),
            status=row["status"],
            last_discovered_at=row["last_discovered_at"],
            discovery_run_id=row["discovery_run_id"],
            last_modified_at=row["last_modified_at"],
            created_at=row["created_at"],
        )

    def _scope(self, tenant_id: str, identity: str):
        return (
            tenant_predicate(self.table.c, tenant_id),
            self.table.c.identity == identity,
        )

    async def find_matching(
        self, session: AsyncSession, tenant_id: str, criteria: Mapping[str, Any]
    ) -> list[ConfigurationItem]:
        # Equality over the supplied criteria only; absent attributes are not matched as NULL.
        stmt = select(self.table).where(tenant_predicate(self.table.c, tenant_id))
        for name, value in criteria.items():
            stmt = stmt.where(self.table.c[name] == value)
        # Stable ordering keeps the "first row wins" rule deterministic.
        stmt = stmt.order_by(self.table.c.created_at, self.table.c.identity)
        result = await session.execute(stmt)
        return [self._to_item(row) for row in result.mappings().all()]

    async def get(self, session: AsyncSession, tenant_id: str, identity: str) -> ConfigurationItem | None:
        result = await session.execute(select(self.table).where(*self._scope(tenant_id, identity)))
        row = result.mappings().first()
        return self._to_item(row) if row is not None else None

    async def insert(
        self, session: AsyncSession, *, tenant_id: str, identity: str, values: Mapping[str, Any]
    ) -> None:
        row = dict(values)
        row["identity"] = identity
        row["tenant_id"] = tenant_id
        row.setdefault("category", self.schema.name)
        row.setdefault("managed", False)
        await session.execute(insert(self.table).values(**row))

    async def update(
        self, session: AsyncSession, *, tenant_id: str, identity: str, values: Mapping[str, Any]
    ) -> int:
        payload = {key: value for key, value in values.items() if key not in {"identity", "tenant_id"}}
        if not payload:
            return 0
        result = await session.execute(
            update(self.table).where(*self._scope(tenant_id, identity)).values(**payload)
        )
        return int(result.rowcount or 0)

    async def touch(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        identity: str,
        discovered_at: datetime,
        discovery_run_id: str | None = None,
    ) -> int:
        values: dict[str, Any] = {"last_discovered_at": discovered_at}
        if discovery_run_id is not None:
            values["discovery_run_id"] = discovery_run_id
        return await self.update(session, tenant_id=tenant_id, identity=identity, values=values)

    async def set_managed(self, session: AsyncSession, *, tenant_id: str, identity: str, managed: bool) -> int:
        return await self.update(session, tenant_id=tenant_id, identity=identity, values={"managed": managed})

    async def delete(self, session: AsyncSession, *, tenant_id: str, identity: str) -> int:
        result = await session.execute(delete(self.table).where(*self._scope(tenant_id, identity)))
        return int(result.rowcount or 0)


class EntityStore:
    """Resolves category names to typed tables instead of concatenated table names."""

    def __init__(self, registry: CategoryRegistry) -> None:
        self.registry = registry
        self._tables: dict[str, CategoryTable] = {}

    def get(self, category: str) -> CategoryTable:
        schema = self.registry.schema(category)
        table = self._tables.get(schema.key)
        if table is None:
            table = CategoryTable(schema, self.registry.table(schema.name))
            self._tables[schema.key] = table
        return table

    def has(self, category: str | None) -> bool:
        try:
            self.registry.schema(category)
        except CmdbValidationError:
            return False
        return True


@lru_cache
def get_entity_store() -> EntityStore:
    # Load category schemas once per process; an empty registry is valid for bootstrapping.
    settings = get_settings()
    if settings.cmdb_category_schema_file:
        registry = load_registry(settings.cmdb_category_schema_file)
    else:
        registry = CategoryRegistry()
    logger.info("ci_registry_loaded categories=%s", ",".join(registry.categories()) or "-")
    return EntityStore(registry)
