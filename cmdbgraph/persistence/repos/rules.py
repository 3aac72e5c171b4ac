from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.domain.models import IdentificationRule
from cmdbgraph.persistence.guards import require_tenant_id, tenant_predicate


async def list_rules(
    session: AsyncSession,
    *,
    tenant_id: str,
    category: str,
) -> list[IdentificationRule]:
    # Ascending priority, id as tie-breaker so evaluation order is deterministic.
    require_tenant_id(tenant_id)
    stmt = (
        select(IdentificationRule)
        .where(
            tenant_predicate(IdentificationRule, tenant_id),
            func.lower(IdentificationRule.category) == category.lower(),
        )
        .order_by(IdentificationRule.priority.asc(), IdentificationRule.id.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def create_rule(
    session: AsyncSession,
    *,
    tenant_id: str,
    category: str,
    criterion_attributes: list[str],
    priority: int = 0,
    allow_null: bool = False,
) -> IdentificationRule:
    # Rules normally come from configuration; operators and tests seed them here.
    require_tenant_id(tenant_id)
    rule = IdentificationRule(
        tenant_id=tenant_id,
        category=category,
        priority=priority,
        criterion_attributes=list(criterion_attributes),
        allow_null=allow_null,
    )
    session.add(rule)
    await session.flush()
    return rule
