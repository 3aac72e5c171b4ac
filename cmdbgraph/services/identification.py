from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Mapping, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from cmdbgraph.domain.categories import ConfigurationItem
from cmdbgraph.domain.models import IdentificationRule
from cmdbgraph.persistence.entity_store import CategoryTable


logger = logging.getLogger(__name__)


def is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


@dataclass(frozen=True)
class RuleSpec:
    id: int | None
    priority: int
    criterion_attributes: tuple[str, ...]
    allow_null: bool


def rule_specs(rules: Sequence[IdentificationRule | RuleSpec]) -> list[RuleSpec]:
    return [
        RuleSpec(
            id=rule.id,
            priority=rule.priority or 0,
            criterion_attributes=tuple(rule.criterion_attributes or ()),
            allow_null=bool(rule.allow_null),
        )
        for rule in rules
    ]


@dataclass(frozen=True)
class ApplicableRule:
    rule: RuleSpec
    # Criterion attribute -> payload value, in rule order; only non-empty values.
    criteria: dict[str, Any]
    # Criterion attributes left out of the predicate (null-allowed rules only).
    omitted: tuple[str, ...] = ()


@dataclass(frozen=True)
class Match:
    item: ConfigurationItem
    applicable: ApplicableRule


@dataclass(frozen=True)
class NoMatch:
    # None when no rule could be applied to the payload.
    applicable: ApplicableRule | None = None
    reasons: list[str] = field(default_factory=list)


def select_rule(
    rules: Sequence[RuleSpec], attributes: Mapping[str, Any]
) -> tuple[ApplicableRule | None, list[str]]:
    """Pick the first rule, by ascending priority, whose criteria the payload satisfies.

    Strict rules need every criterion attribute present and non-empty. Null-allowed
    rules need at least one; the others are dropped from the predicate rather than
    matched as NULL. Returns the rule (or None) plus the reasons earlier rules were
    skipped.
    """
    reasons: list[str] = []
    ordered = sorted(rules, key=lambda rule: (rule.priority, rule.id or 0))
    for rule in ordered:
        names = list(rule.criterion_attributes or [])
        present = {name: attributes.get(name) for name in names if not is_empty(attributes.get(name))}
        if rule.allow_null:
            if present:
                omitted = tuple(name for name in names if name not in present)
                return ApplicableRule(rule=rule, criteria=present, omitted=omitted), reasons
            reasons.append(f"rule {rule.id}: no criterion attribute present")
            continue
        if names and len(present) == len(names):
            return ApplicableRule(rule=rule, criteria=present), reasons
        missing = [name for name in names if name not in present]
        reasons.append(f"rule {rule.id}: missing {','.join(missing) or 'criteria'}")
    return None, reasons


async def evaluate(
    session: AsyncSession,
    table: CategoryTable,
    *,
    tenant_id: str,
    rules: Sequence[IdentificationRule | RuleSpec],
    attributes: Mapping[str, Any],
) -> Match | NoMatch:
    # Evaluation stops at the first applicable rule whether or not it finds a row.
    applicable, reasons = select_rule(rule_specs(rules), attributes)
    if applicable is None:
        return NoMatch(applicable=None, reasons=reasons)
    rows = await table.find_matching(session, tenant_id, applicable.criteria)
    if not rows:
        return NoMatch(applicable=applicable, reasons=reasons)
    if len(rows) > 1:
        logger.warning(
            "ci_multiple_matches tenant=%s category=%s rule=%s count=%s using=%s",
            tenant_id,
            table.category,
            applicable.rule.id,
            len(rows),
            rows[0].identity,
        )
    return Match(item=rows[0], applicable=applicable)
