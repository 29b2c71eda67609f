"""Administrative CLI for ragdesk."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Sequence

from ragdesk.api.app import AppDependencies, build_dependencies
from ragdesk.config import Settings, get_settings
from ragdesk.embeddings import ChromaVectorIndex
from ragdesk.metrics.observability import configure_logging


async def _collection(deps: AppDependencies, recreate: bool) -> dict:
    if recreate:
        if not isinstance(deps.index, ChromaVectorIndex):
            raise SystemExit("Recreate is only supported for the Chroma vector index")
        deps.index.recreate()
    return {"recreated": recreate, "vectors": await deps.index.count()}


async def _usage(deps: AppDependencies, owner_id: str) -> dict:
    return (await deps.usage.get_usage(owner_id)).to_dict()


async def _ask(deps: AppDependencies, owner_id: str, question: str) -> dict:
    await deps.database.init()
    try:
        result = await deps.query.answer(question, owner_id)
    finally:
        await deps.database.dispose()
    return {
        "answer": result.answer,
        "cached": result.cached,
        "sources": [source.to_dict() for source in result.sources],
        "usage": result.usage.to_dict() if result.usage else None,
        "latency_ms": result.latency_ms,
    }


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ragdesk-admin", description="Administer a ragdesk deployment.")
    commands = parser.add_subparsers(dest="command", required=True)

    collection = commands.add_parser("collection", help="Ensure the vector collection exists and report its size")
    collection.add_argument("--recreate", action="store_true", help="Drop and recreate the collection")

    usage = commands.add_parser("usage", help="Print today's generation usage for an owner")
    usage.add_argument("owner_id")

    ask = commands.add_parser("ask", help="Answer one question against an owner's documents")
    ask.add_argument("owner_id")
    ask.add_argument("question")
    return parser.parse_args(argv)


def run(args: argparse.Namespace, settings: Settings | None = None) -> dict:
    deps = build_dependencies(settings or get_settings())
    if args.command == "collection":
        return asyncio.run(_collection(deps, args.recreate))
    if args.command == "usage":
        return asyncio.run(_usage(deps, args.owner_id))
    return asyncio.run(_ask(deps, args.owner_id, args.question))


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging()
    print(json.dumps(run(args), indent=2))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
