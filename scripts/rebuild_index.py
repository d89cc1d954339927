#!/usr/bin/env python3
"""
Index Rebuild Utility
Rebuilds search indexes from the documents on disk after corruption or out-of-band edits.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

import dotenv
dotenv.load_dotenv()

sys.path.insert(0, str(Path(__file__).parent.parent))

from recordvault.core.config import StorageConfig
from recordvault.core.errors import StoreError
from recordvault.service import StorageService


async def run(args) -> int:
    config = StorageConfig.from_env()
    if args.storage:
        config.root = Path(args.storage)

    service = StorageService(config)
    indexing = service.indexing

    if args.check:
        await indexing.load_indexes(args.categories or None)
        health = await indexing.check_index_health(args.categories or None)
        print(json.dumps(health, indent=2))
        return 0 if all(h["status"] == "healthy" for h in health.values()) else 1

    print("Starting search index rebuild...")
    rebuilt = await indexing.rebuild_all_indexes(args.categories or None)
    for category, count in sorted(rebuilt.items()):
        print(f"✓ {category}: {count} documents indexed")

    if args.optimize:
        removed = await indexing.optimize_all_indexes()
        print(f"✓ Optimized {len(removed)} indexes")

    stats = indexing.search_index.stats()
    print(f"Total terms: {stats['total_terms']}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Rebuild or check the search indexes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                          # Rebuild every category
  %(prog)s clients tasks            # Rebuild selected categories
  %(prog)s --check                  # Report index health without rebuilding
        """
    )
    parser.add_argument("categories", nargs="*", help="Categories to rebuild (default: all)")
    parser.add_argument("--storage", help="Storage root (default: STORAGE_PATH)")
    parser.add_argument("--check", action="store_true", help="Only report index health")
    parser.add_argument("--optimize", action="store_true", help="Optimize indexes after rebuilding")
    args = parser.parse_args()

    try:
        return asyncio.run(run(args))
    except (StoreError, ValueError) as e:
        print(f"ERROR: Index rebuild failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
