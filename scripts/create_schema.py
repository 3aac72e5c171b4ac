from __future__ import annotations

import argparse
import asyncio

from cmdbgraph.core.logging import configure_logging
from cmdbgraph.domain.categories import load_registry
from cmdbgraph.persistence.db import create_schema


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create CMDB tables on a development database")
    parser.add_argument("--schema-file", required=True, help="Category schema JSON document")
    return parser


async def _create(args: argparse.Namespace) -> None:
    configure_logging()
    registry = load_registry(args.schema_file)
    await create_schema(registry)
    print(f"created tables for {len(registry.categories())} categories")


if __name__ == "__main__":
    asyncio.run(_create(_build_parser().parse_args()))
