from __future__ import annotations

import argparse
import asyncio
import sys

from cmdbgraph.core.errors import CmdbError
from cmdbgraph.domain.categories import validate_identifier
from cmdbgraph.persistence.db import SessionLocal
from cmdbgraph.persistence.repos.rules import create_rule


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Register an identification rule for a CI category")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--category", required=True, help="CI category, e.g. Server")
    parser.add_argument(
        "--criteria",
        required=True,
        help="Comma-separated criterion attributes in identity order, e.g. hostname,serial_number",
    )
    parser.add_argument("--priority", type=int, default=0, help="Lower values are evaluated first")
    parser.add_argument("--allow-null", action="store_true", help="Match on any non-empty subset")
    return parser


async def _create(args: argparse.Namespace) -> int:
    criteria = [item.strip() for item in args.criteria.split(",") if item.strip()]
    try:
        validate_identifier(args.category, kind="category")
        for name in criteria:
            validate_identifier(name, kind="attribute")
    except CmdbError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    if not criteria:
        print("at least one criterion attribute is required", file=sys.stderr)
        return 2
    async with SessionLocal() as session:
        rule = await create_rule(
            session,
            tenant_id=args.tenant,
            category=args.category,
            criterion_attributes=criteria,
            priority=args.priority,
            allow_null=args.allow_null,
        )
        await session.commit()
        print(f"rule_id={rule.id} category={rule.category} criteria={','.join(criteria)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_create(_build_parser().parse_args())))
