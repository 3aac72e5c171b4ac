from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.core.config import get_settings
from cmdbgraph.domain.categories import BOOKKEEPING_ATTRIBUTES
from cmdbgraph.persistence.repos import baselines as baselines_repo


logger = logging.getLogger(__name__)

OPERATIONS = ("insert", "update", "delete")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BaselinePolicy:
    name: str
    max_level: int


@dataclass(frozen=True)
class AttributeChange:
    attribute: str
    old: Any
    new: Any
    operation: str
    at: datetime


async def resolve_policies(session: AsyncSession, *, tenant_id: str, category: str) -> list[BaselinePolicy]:
    # Enabled definitions plus the implicit default baseline when the tenant opted in.
    settings = get_settings()
    definitions = await baselines_repo.list_enabled_definitions(session, tenant_id=tenant_id, category=category)
    policies = [BaselinePolicy(name=item.name, max_level=item.max_level) for item in definitions]
    names = {policy.name for policy in policies}
    if settings.cmdb_default_baseline_name not in names and await baselines_repo.default_tracking_enabled(
        session, tenant_id=tenant_id
    ):
        policies.append(
            BaselinePolicy(
                name=settings.cmdb_default_baseline_name,
                max_level=settings.cmdb_default_baseline_max_level,
            )
        )
    return policies


async def _append_update(
    session: AsyncSession,
    policy: BaselinePolicy,
    *,
    tenant_id: str,
    entity_id: str,
    category: str,
    snapshot: dict[str, Any],
    created_at: datetime,
) -> bool:
    existing = await baselines_repo.list_update_ids(
        session, tenant_id=tenant_id, entity_id=entity_id, baseline_name=policy.name
    )
    if policy.max_level <= 0:
        await baselines_repo.delete_records(session, tenant_id=tenant_id, record_ids=existing)
        return False
    # Evict before appending so the retained count never exceeds max_level.
    overflow = len(existing) - policy.max_level + 1
    if overflow > 0:
        await baselines_repo.delete_records(session, tenant_id=tenant_id, record_ids=existing[:overflow])
    await baselines_repo.append_record(
        session,
        tenant_id=tenant_id,
        entity_id=entity_id,
        category=category,
        baseline_name=policy.name,
        operation="update",
        snapshot=snapshot,
        created_at=created_at,
    )
    return True


async def record_baseline(
    session: AsyncSession,
    *,
    tenant_id: str,
    category: str,
    entity_id: str,
    operation: str,
    snapshot: dict[str, Any],
    previous: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Append ``operation`` to every baseline stream of the entity.

    One ``insert`` record is kept per stream; a repeated insert is a no-op. Update
    streams are a bounded FIFO of ``max_level`` records, oldest evicted first. When
    an update lands on a stream with no insert record yet and ``previous`` is
    given, the pre-update snapshot is stored as that insert first.

    The caller owns the transaction. Returns the names of the baselines written.
    """
    if operation not in OPERATIONS:
        raise ValueError(f"Unsupported baseline operation: {operation}")
    created_at = now or _utc_now()
    written: list[str] = []
    policies = await resolve_policies(session, tenant_id=tenant_id, category=category)
    for policy in policies:
        if operation == "insert":
            if await baselines_repo.has_insert_record(
                session, tenant_id=tenant_id, entity_id=entity_id, baseline_name=policy.name
            ):
                continue
            await baselines_repo.append_record(
                session,
                tenant_id=tenant_id,
                entity_id=entity_id,
                category=category,
                baseline_name=policy.name,
                operation="insert",
                snapshot=snapshot,
                created_at=created_at,
            )
            written.append(policy.name)
        elif operation == "update":
            if previous is not None and not await baselines_repo.has_insert_record(
                session, tenant_id=tenant_id, entity_id=entity_id, baseline_name=policy.name
            ):
                await baselines_repo.append_record(
                    session,
                    tenant_id=tenant_id,
                    entity_id=entity_id,
                    category=category,
                    baseline_name=policy.name,
                    operation="insert",
                    snapshot=previous,
                    created_at=created_at,
                )
            if await _append_update(
                session,
                policy,
                tenant_id=tenant_id,
                entity_id=entity_id,
                category=category,
                snapshot=snapshot,
                created_at=created_at,
            ):
                written.append(policy.name)
        else:
            await baselines_repo.append_record(
                session,
                tenant_id=tenant_id,
                entity_id=entity_id,
                category=category,
                baseline_name=policy.name,
                operation="delete",
                snapshot=snapshot,
                created_at=created_at,
            )
            written.append(policy.name)
    if written:
        logger.debug(
            "ci_baseline_recorded tenant=%s entity=%s operation=%s baselines=%s",
            tenant_id,
            entity_id,
            operation,
            ",".join(written),
        )
    return written


async def baseline_history(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_id: str,
    baseline_name: str,
) -> list[AttributeChange]:
    # Diff consecutive snapshots of one stream; bookkeeping attributes are omitted.
    records = await baselines_repo.list_records(
        session, tenant_id=tenant_id, entity_id=entity_id, baseline_name=baseline_name
    )
    changes: list[AttributeChange] = []
    previous: dict[str, Any] = {}
    for record in records:
        current = record.snapshot_json or {}
        if record.operation != "insert":
            for name in sorted(set(previous) | set(current)):
                if name in BOOKKEEPING_ATTRIBUTES:
                    continue
                if previous.get(name) != current.get(name):
                    changes.append(
                        AttributeChange(
                            attribute=name,
                            old=previous.get(name),
                            new=current.get(name),
                            operation=record.operation,
                            at=record.created_at,
                        )
                    )
        previous = current
    return changes
