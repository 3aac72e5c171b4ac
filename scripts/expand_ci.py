from __future__ import annotations

import argparse
import asyncio
import json

from cmdbgraph.core.logging import configure_logging
from cmdbgraph.persistence.db import SessionLocal
from cmdbgraph.persistence.entity_store import get_entity_store
from cmdbgraph.services.traversal import expand


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print the composite relationship tree of a CI")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--category", required=True, help="Root CI category")
    parser.add_argument("--identity", required=True, help="Root CI identity")
    parser.add_argument("--depth", type=int, default=2, help="Hops to expand")
    return parser


async def _expand(args: argparse.Namespace) -> None:
    configure_logging()
    async with SessionLocal() as session:
        root = await expand(
            session,
            get_entity_store(),
            tenant_id=args.tenant,
            root_id=args.identity,
            root_category=args.category,
            depth=args.depth,
        )
    print(json.dumps(root.to_dict(), indent=2, default=str))


if __name__ == "__main__":
    asyncio.run(_expand(_build_parser().parse_args()))
