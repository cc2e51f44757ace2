from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from offboard.core.config import get_settings
from offboard.services.deletion.export import verify_backup


def main() -> None:
    # Check a final deletion backup before relying on it for a restore.
    parser = argparse.ArgumentParser(description="Verify a tenant deletion backup")
    parser.add_argument("backup_dir", help="directory holding manifest.json and the snapshot artifact")
    args = parser.parse_args()

    settings = get_settings()
    result = verify_backup(
        Path(args.backup_dir),
        encryption_key=settings.deletion_backup_encryption_key,
        signing_key=settings.deletion_backup_signing_key,
    )
    print(json.dumps({"ok": result.ok, "errors": result.errors, "row_count": result.row_count}, indent=2))
    if not result.ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
