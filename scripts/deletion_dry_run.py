from __future__ import annotations

import argparse
import asyncio
import json
import sys

from offboard.core.errors import OffboardError
from offboard.core.logging import configure_logging
from offboard.persistence.db import engine
from offboard.services.deletion.context import build_default_context
from offboard.services.deletion.status import run_dry_run


async def _run(tenant_id: str) -> dict:
    ctx = build_default_context()
    try:
        report = await run_dry_run(ctx, tenant_id)
    finally:
        await engine.dispose()
    return report.to_dict()


def main() -> None:
    # Print what a deletion of the tenant would remove, without touching any data.
    parser = argparse.ArgumentParser(description="Preview a tenant deletion")
    parser.add_argument("tenant_id")
    parser.add_argument("--json", action="store_true", help="print the raw report as JSON")
    args = parser.parse_args()
    configure_logging()

    try:
        report = asyncio.run(_run(args.tenant_id))
    except OffboardError as exc:
        print(f"error={exc.code} message={exc.message}", file=sys.stderr)
        sys.exit(2)

    if args.json:
        print(json.dumps(report, indent=2, sort_keys=True))
    else:
        print(f"tenant_id={report['tenant_id']} company={report['company_name']}")
        for table_name, count in sorted(report["table_counts"].items()):
            if count:
                print(f"  {table_name}: {count}")
        print(f"total_records={report['total_records']}")
        print(f"estimated_duration_minutes={report['estimated_duration_minutes']}")
        for warning in report["warnings"]:
            print(f"warning: {warning}")
        for blocker in report["blockers"]:
            print(f"blocker[{blocker['reason']}]: {blocker['message']}")
        print(f"would_delete={str(report['would_delete']).lower()}")
    if not report["would_delete"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
