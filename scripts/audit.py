#!/usr/bin/env python3
"""
Audit the file store and print (or save) a markdown report.
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
    results, summary = await service.audit_all()

    if args.json:
        output = json.dumps({
            "summary": summary.to_dict(),
            "results": [r.to_dict() for r in results],
        }, indent=2)
    else:
        output = service.generate_report(results, summary)

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Audit report written to {args.output}")
    else:
        print(output)

    if args.verbose:
        for warning in summary.warnings:
            print(f"WARNING: {warning}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Classify every stored document and report what should happen to it",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                          # Print a markdown report
  %(prog)s --json -o audit.json     # Save results and summary as JSON
  %(prog)s --storage ./storage      # Audit a specific storage root

Environment variables:
- STORAGE_PATH=./storage
- SYSTEM_OF_RECORD_PATH=./data/records.db
        """
    )
    parser.add_argument("--storage", help="Storage root (default: STORAGE_PATH)")
    parser.add_argument("--output", "-o", help="Write the report to a file instead of stdout")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of markdown")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show audit warnings")
    args = parser.parse_args()

    try:
        return asyncio.run(run(args))
    except (StoreError, ValueError) as e:
        print(f"ERROR: Audit failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
