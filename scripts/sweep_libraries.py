#!/usr/bin/env python3
"""Run the consistency sweep over one or all note graph libraries.

Removes orphaned entities (no linked notes) together with their relations
and aliases, plus any dangling rows left by older versions.

Usage:
    python scripts/sweep_libraries.py                  # main library
    python scripts/sweep_libraries.py --library work
    python scripts/sweep_libraries.py --all
    python scripts/sweep_libraries.py --all --dry-run  # counts only, no writes
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import Dict, Optional

from notegraph.config import load_config
from notegraph.errors import LibraryNotFound, SweepFailure
from notegraph.extraction import LLMExtractor
from notegraph.pool import LibraryPool

logger = logging.getLogger("sweep_libraries")


def sweep_libraries(
    pool: LibraryPool,
    library: Optional[str] = None,
    all_libraries: bool = False,
    dry_run: bool = False,
) -> Dict[str, Dict[str, int]]:
    """Sweep (or preview) each selected library. Returns reports by library id."""
    if all_libraries:
        targets = pool.get_all_libraries()
    else:
        targets = [pool.normalize_key(library)]

    reports: Dict[str, Dict[str, int]] = {}
    for library_id in targets:
        graph = pool.get(library_id, create=False)
        if dry_run:
            report = graph.sweeper.preview()
        else:
            report = graph.sweep()
        reports[library_id] = report.to_dict()
        logger.info(
            "%s %s: %s", "would remove" if dry_run else "removed", library_id, report.to_dict()
        )
    return reports


def main() -> int:
    parser = argparse.ArgumentParser(description="Sweep orphaned graph rows")
    parser.add_argument("--library", default=None,
                        help="Library to sweep (default: main)")
    parser.add_argument("--all", action="store_true", dest="all_libraries",
                        help="Sweep every library found next to the main database")
    parser.add_argument("--dry-run", action="store_true",
                        help="Report what would be removed without writing")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    cfg = load_config()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    pool = LibraryPool.from_config(cfg, lambda: LLMExtractor(cfg))
    try:
        reports = sweep_libraries(pool, args.library, args.all_libraries, args.dry_run)
    except (ValueError, LibraryNotFound) as exc:
        parser.error(str(exc))
    except SweepFailure as exc:
        logger.error("Sweep failed, nothing was changed: %s", exc)
        return 1
    finally:
        pool.close_all()

    print(json.dumps({"dry_run": args.dry_run, "libraries": reports}, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
