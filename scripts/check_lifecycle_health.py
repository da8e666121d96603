"""
Sweep every document lineage and report its lifecycle health.

Exits non-zero when any lineage reports an ERROR status (two issued members, two
drafts, or a superseded member with no successor). Intended for cron / release
checks.

Usage:
  python scripts/check_lifecycle_health.py [--verbose]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.riskdocs.constants import OPS_LOGGER
from app.riskdocs.lifecycle.chain import all_lineage_ids, lineage_health
from scripts._db_utils import resolve_database_url, script_session

logger = logging.getLogger(OPS_LOGGER)


def sweep(database_url: str, *, verbose: bool = False) -> int:
    errors = 0
    with script_session(database_url) as s:
        for lineage_id in all_lineage_ids(s):
            h = lineage_health(s, lineage_id)
            if h.is_error:
                errors += 1
                logger.error("LINEAGE HEALTH %s: %s (%s)", lineage_id, h.status, ", ".join(h.problems))
            elif verbose or h.status != "OK" or h.artifact_issues:
                print(f"{lineage_id}: {h.status} {'; '.join(h.artifact_issues)}".rstrip(), flush=True)
    return errors


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--verbose", action="store_true", help="Print every lineage, not only problems.")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    errors = sweep(resolve_database_url(), verbose=args.verbose)
    print(f"Lineages with errors: {errors}", flush=True)
    return 1 if errors else 0


if __name__ == "__main__":
    sys.exit(main())
