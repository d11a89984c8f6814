#!/usr/bin/env python3
"""Maintenance jobs for a memory database.

All jobs are bounded by a limit and idempotent, so re-running after a
failure is the recovery path. Safe to run alongside the API (WAL mode,
busy_timeout).

Suggested cron: 30 3 * * * cd /path/to/memory-intel && . .env && venv/bin/python scripts/maintenance.py backfill

Usage:
    python scripts/maintenance.py backfill --dry-run
    python scripts/maintenance.py reembed --limit 200
    python scripts/maintenance.py densify --min-co-occurrences 3
    python scripts/maintenance.py consolidate --dry-run      # list clusters only
    python scripts/maintenance.py regression run
    python scripts/maintenance.py regression compare <run_id>
    python scripts/maintenance.py regression promote <run_id>
    python scripts/maintenance.py regression reset
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from memory_intel.backfill import backfill_canonical, reembed_missing
from memory_intel.config import load_config
from memory_intel.consolidation import run_consolidation
from memory_intel.embeddings import OpenRouterEmbeddings
from memory_intel.entities import KnowledgeGraph
from memory_intel.pool import StoragePool
from memory_intel.regression import RegressionHarness
from memory_intel.search import HybridSearch

logger = logging.getLogger("maintenance")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Memory database maintenance jobs")
    parser.add_argument("--db", default=None, help="Database path (default: MEMORY_INTEL_DB)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("backfill", help="Recompute content hashes, tags and metadata flags")
    p.add_argument("--limit", type=int, default=None, help="Max memories to scan")
    p.add_argument("--dry-run", action="store_true", help="Report changes without writing")

    p = sub.add_parser("reembed", help="Embed memories stored without a vector")
    p.add_argument("--limit", type=int, default=500)
    p.add_argument("--batch-size", type=int, default=50)
    p.add_argument("--dry-run", action="store_true")

    p = sub.add_parser("densify", help="Infer co-occurrence relationships between entities")
    p.add_argument("--min-co-occurrences", type=int, default=2)
    p.add_argument("--limit", type=int, default=None, help="Max entity pairs per run")
    p.add_argument("--dry-run", action="store_true")

    p = sub.add_parser("consolidate", help="Merge clusters of similar memories")
    p.add_argument("--min-similarity", type=float, default=0.75)
    p.add_argument("--min-cluster-size", type=int, default=3)
    p.add_argument("--max-memories", type=int, default=500)
    p.add_argument("--dry-run", action="store_true", help="List clusters without merging")

    p = sub.add_parser("regression", help="Retrieval regression harness")
    rsub = p.add_subparsers(dest="action", required=True)
    r = rsub.add_parser("run", help="Replay golden queries against baselines")
    r.add_argument("--query", action="append", dest="queries", help="Override golden queries (repeatable)")
    r.add_argument("--update-baselines", action="store_true")
    r.add_argument("--include-metadata", action="store_true")
    r.add_argument("--no-alert-memory", action="store_true")
    r = rsub.add_parser("compare", help="Compare current results against a stored run")
    r.add_argument("run_id")
    r = rsub.add_parser("promote", help="Promote a stored run to baseline")
    r.add_argument("run_id")
    r.add_argument("--query", action="append", dest="queries")
    r = rsub.add_parser("reset", help="Drop baselines")
    r.add_argument("--query", action="append", dest="queries")
    rsub.add_parser("runs", help="List recent runs")
    return parser


async def run_command(args: argparse.Namespace) -> Dict[str, Any]:
    cfg = load_config()
    pool = StoragePool(
        default_path=cfg.db_path,
        dimensions=cfg.embedding_dimensions,
        busy_timeout_ms=cfg.busy_timeout_ms,
    )
    embedder = None
    if cfg.openrouter_api_key:
        embedder = OpenRouterEmbeddings(
            api_key=cfg.openrouter_api_key,
            model=cfg.embedding_model,
            dimensions=cfg.embedding_dimensions,
            base_url=cfg.openrouter_base_url,
            max_retries=cfg.embed_max_retries,
            cache_size=cfg.embed_cache_size,
        )

    try:
        storage = pool.get(args.db)
        if args.command == "backfill":
            limit = args.limit or cfg.backfill_limit
            return backfill_canonical(storage, limit=limit, dry_run=args.dry_run).to_dict()

        if args.command == "reembed":
            if embedder is None and not args.dry_run:
                raise ValueError("No OPENROUTER_API_KEY configured - cannot generate embeddings")
            return await reembed_missing(
                storage, embedder, limit=args.limit, batch_size=args.batch_size, dry_run=args.dry_run,
            )

        if args.command == "densify":
            limit = args.limit or cfg.densify_limit
            return KnowledgeGraph(storage).densify(args.min_co_occurrences, limit, args.dry_run).to_dict()

        if args.command == "consolidate":
            return await run_consolidation(
                storage,
                embedder,
                min_similarity=args.min_similarity,
                min_cluster_size=args.min_cluster_size,
                max_memories=args.max_memories,
                dry_run=args.dry_run,
            )

        search = HybridSearch(storage, embedder=embedder, config=cfg)
        harness = RegressionHarness(search)
        if args.action == "run":
            result = await harness.run(
                queries=args.queries,
                update_baselines=args.update_baselines,
                include_metadata=args.include_metadata,
                create_alert_memory=False if args.no_alert_memory else None,
            )
            return result.to_dict()
        if args.action == "compare":
            return (await harness.compare_against_run(args.run_id)).to_dict()
        if args.action == "promote":
            return harness.promote_baselines_from_run(args.run_id, args.queries)
        if args.action == "reset":
            return harness.reset_baselines(args.queries)
        return {"runs": harness.list_runs()}
    finally:
        pool.close_all()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    try:
        result = asyncio.run(run_command(args))
    except (ValueError, LookupError) as exc:
        logger.error("%s", exc)
        return 1

    print(json.dumps(result, indent=2, ensure_ascii=False, default=str))
    if isinstance(result, dict) and (result.get("errors") or result.get("alerts")):
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
