#!/usr/bin/env python3
"""
Compress cold files (old backups, logs) under a directory, or report compression stats.
"""

import argparse
import asyncio
import sys
from pathlib import Path

import dotenv
dotenv.load_dotenv()

sys.path.insert(0, str(Path(__file__).parent.parent))

from recordvault.core.compression import CompressionCodec
from recordvault.core.config import COMPRESSION_THRESHOLD
from recordvault.core.errors import CompressionError
from recordvault.util.formatting import format_bytes


async def run(args) -> int:
    codec = CompressionCodec(threshold=args.threshold)

    if not args.stats_only:
        result = await codec.compress_directory(
            args.directory,
            extensions=args.extensions or None,
            min_size=args.min_size,
            exclude_patterns=args.exclude,
        )
        print(f"Compressed {result.files_compressed} of {result.files_considered} files, "
              f"saved {format_bytes(result.bytes_saved)}")
        for error in result.errors:
            print(f"ERROR: {error}")

    stats = await codec.get_compression_stats(args.directory)
    print(f"Plain files: {stats['total_files']} ({format_bytes(stats['original_size'])})")
    print(f"Compressed files: {stats['compressed_files']} ({format_bytes(stats['compressed_size'])})")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Gzip eligible files in place when it saves enough space",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s ./storage/audit-backups              # Compress old backups
  %(prog)s ./logs --ext .log --min-size 4096    # Compress large logs only
  %(prog)s ./storage --stats-only               # Just report
        """
    )
    parser.add_argument("directory", help="Directory to compress")
    parser.add_argument("--ext", dest="extensions", action="append", help="File extension to include (repeatable)")
    parser.add_argument("--exclude", action="append", help="Skip paths with a folder or file name matching this name or glob (repeatable)")
    parser.add_argument("--min-size", type=int, default=1024, help="Minimum file size in bytes")
    parser.add_argument("--threshold", type=float, default=COMPRESSION_THRESHOLD,
                        help="Keep the .gz only if smaller than threshold x original")
    parser.add_argument("--stats-only", action="store_true", help="Report without compressing")
    args = parser.parse_args()

    if not 0 < args.threshold <= 1:
        parser.error("--threshold must be in (0, 1]")

    try:
        return asyncio.run(run(args))
    except CompressionError as e:
        print(f"ERROR: Compression failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
