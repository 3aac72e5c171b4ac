from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any, Mapping, Sequence
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.core.config import get_settings
from cmdbgraph.core.errors import (
    CmdbValidationError,
    ConstraintViolationError,
    IdentityUnresolvableError,
)
from cmdbgraph.domain.categories import BOOKKEEPING_ATTRIBUTES, ConfigurationItem
from cmdbgraph.domain.models import IdentificationRule
from cmdbgraph.persistence.entity_store import CategoryTable, EntityStore
from cmdbgraph.persistence.guards import require_tenant
from cmdbgraph.persistence.repos import rules as rules_repo
from cmdbgraph.services import identification
from cmdbgraph.services.baselines import record_baseline


logger = logging.getLogger(__name__)

# Fixed namespace keeps identities stable across processes and releases.
IDENTITY_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "urn:cmdbgraph:configuration-item")

# Never compared when deciding whether a stored row differs from the payload.
_UNCOMPARED = frozenset(
    {"identity", "tenant_id", "category", "last_discovered_at", "discovery_run_id", "last_modified_at", "created_at"}
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UpsertResult:
    identity: str
    category: str
    existed: bool
    # Any stored value rewritten.
    changed: bool = False
    # A change outside the bookkeeping attributes; an update baseline was written.
    material: bool = False


def _identity_part(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def compute_identity(tenant_id: str, category: str, criterion_values: Sequence[Any]) -> str:
    # uuid5 over a JSON array of tenant, category and the criterion values in rule order;
    # the array encoding keeps ("a|b", "c") and ("a", "b|c") apart.
    parts = [tenant_id, category, *(_identity_part(value) for value in criterion_values)]
    name = json.dumps(parts, separators=(",", ":"))
    return str(uuid.uuid5(IDENTITY_NAMESPACE, name))


def _comparable(value: Any) -> Any:
    # sqlite hands timestamps back naive; compare everything as UTC.
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def diff_attributes(existing: ConfigurationItem, incoming: Mapping[str, Any]) -> tuple[list[str], list[str]]:
    """Return ``(changed, material)`` attribute names for a stored row and a payload.

    Only keys present in the payload are compared. ``material`` is the subset of
    ``changed`` outside the bookkeeping attributes.
    """
    changed: list[str] = []
    for name, value in incoming.items():
        if name in _UNCOMPARED:
            continue
        if _comparable(existing.value(name)) != _comparable(value):
            changed.append(name)
    material = [name for name in changed if name not in BOOKKEEPING_ATTRIBUTES]
    return changed, material


def _normalize(table: CategoryTable, attributes: Mapping[str, Any], now: datetime) -> dict[str, Any]:
    values = table.coerce(attributes)
    values["category"] = table.category
    if values.get("status") in (None, ""):
        values["status"] = "active"
    if values.get("last_discovered_at") is None:
        values["last_discovered_at"] = now
    return values


async def _apply_match(
    session: AsyncSession,
    table: CategoryTable,
    *,
    tenant_id: str,
    existing: ConfigurationItem,
    values: dict[str, Any],
    now: datetime,
) -> UpsertResult:
    changed, material = diff_attributes(existing, values)
    if not changed:
        await table.touch(
            session,
            tenant_id=tenant_id,
            identity=existing.identity,
            discovered_at=values["last_discovered_at"],
            discovery_run_id=values.get("discovery_run_id"),
        )
        logger.debug(
            "ci_upsert_unchanged tenant=%s category=%s identity=%s", tenant_id, table.category, existing.identity
        )
        return UpsertResult(identity=existing.identity, category=table.category, existed=True)

    payload = {key: value for key, value in values.items() if key != "created_at"}
    payload["last_modified_at"] = now
    await table.update(session, tenant_id=tenant_id, identity=existing.identity, values=payload)
    if material:
        # Snapshot the row as written, never the raw payload.
        current = await table.get(session, tenant_id, existing.identity)
        await record_baseline(
            session,
            tenant_id=tenant_id,
            category=table.category,
            entity_id=existing.identity,
            operation="update",
            snapshot=current.snapshot() if current else {},
            previous=existing.snapshot(),
            now=now,
        )
    logger.info(
        "ci_upsert_matched tenant=%s category=%s identity=%s changed=%s material=%s",
        tenant_id,
        table.category,
        existing.identity,
        ",".join(changed),
        ",".join(material) or "-",
    )
    return UpsertResult(
        identity=existing.identity,
        category=table.category,
        existed=True,
        changed=True,
        material=bool(material),
    )


async def _insert_new(
    session: AsyncSession,
    table: CategoryTable,
    *,
    tenant_id: str,
    applicable: identification.ApplicableRule,
    values: dict[str, Any],
    now: datetime,
) -> UpsertResult:
    identity = compute_identity(tenant_id, table.category, list(applicable.criteria.values()))
    if applicable.omitted:
        # Partial-identity match: payloads sharing this non-empty subset share the identity.
        logger.debug(
            "ci_identity_partial tenant=%s category=%s identity=%s omitted=%s",
            tenant_id,
            table.category,
            identity,
            ",".join(applicable.omitted),
        )
    row = dict(values)
    row.setdefault("managed", False)
    row["created_at"] = now
    row["last_modified_at"] = now
    await table.insert(session, tenant_id=tenant_id, identity=identity, values=row)
    current = await table.get(session, tenant_id, identity)
    await record_baseline(
        session,
        tenant_id=tenant_id,
        category=table.category,
        entity_id=identity,
        operation="insert",
        snapshot=current.snapshot() if current else {},
        now=now,
    )
    logger.info("ci_upsert_created tenant=%s category=%s identity=%s", tenant_id, table.category, identity)
    return UpsertResult(identity=identity, category=table.category, existed=False, changed=True)


async def _resolve(
    session: AsyncSession,
    table: CategoryTable,
    *,
    tenant_id: str,
    rules: Sequence[identification.RuleSpec],
    values: dict[str, Any],
    now: datetime,
) -> UpsertResult:
    outcome = await identification.evaluate(
        session, table, tenant_id=tenant_id, rules=rules, attributes=values
    )
    if isinstance(outcome, identification.Match):
        return await _apply_match(
            session, table, tenant_id=tenant_id, existing=outcome.item, values=values, now=now
        )
    if outcome.applicable is None:
        raise IdentityUnresolvableError(
            f"No identification rule applies to {table.category} payload"
            + (f" ({'; '.join(outcome.reasons)})" if outcome.reasons else "")
        )
    return await _insert_new(
        session, table, tenant_id=tenant_id, applicable=outcome.applicable, values=values, now=now
    )


async def upsert_ci(
    session: AsyncSession,
    store: EntityStore,
    *,
    tenant_id: str,
    category: str,
    attributes: Mapping[str, Any],
    rules: Sequence[IdentificationRule] | None = None,
    now: datetime | None = None,
) -> UpsertResult:
    """Create or update one CI and commit.

    Must be called at a transaction boundary: a uniqueness conflict on insert
    rolls the session back before the payload is re-resolved as an update.
    """
    require_tenant(tenant_id)
    if not category:
        raise CmdbValidationError("category is required")
    table = store.get(category)
    stamp = now or _utc_now()
    values = _normalize(table, attributes, stamp)
    if rules is None:
        rules = await rules_repo.list_rules(session, tenant_id=tenant_id, category=table.category)
    # Detach from ORM state; a rollback below would expire loaded rule rows.
    rules = identification.rule_specs(rules)
    try:
        result = await _resolve(session, table, tenant_id=tenant_id, rules=rules, values=values, now=stamp)
        await session.commit()
        return result
    except IntegrityError as exc:
        await session.rollback()
        if not get_settings().cmdb_retry_on_conflict:
            raise ConstraintViolationError(f"Conflicting insert for {table.category}") from exc
        logger.warning("ci_upsert_conflict_retry tenant=%s category=%s", tenant_id, table.category)

    # Another writer inserted the same identity; it must now resolve as a match.
    try:
        result = await _resolve(session, table, tenant_id=tenant_id, rules=rules, values=values, now=stamp)
        await session.commit()
        return result
    except IntegrityError as exc:
        await session.rollback()
        raise ConstraintViolationError(f"Conflicting insert for {table.category}") from exc
