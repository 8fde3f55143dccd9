#!/usr/bin/env python3
"""Live smoke test against a real Canvas instance.

connect → poll → identify changes → disconnect, in a throwaway in-memory
database. Nothing is written to the real database.

Usage:
    export CANVAS_API_TOKEN=...  CANVAS_BASE_URL=https://canvas.example.edu
    export ENCRYPTION_KEY=$(python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
    python scripts/canvas_smoke_test.py
"""
import os
import sys

sys.path.insert(0, ".")

from assignment_sync import create_app
from assignment_sync.core.exceptions import SyncError
from assignment_sync.services import reconciliation_service as recon
from assignment_sync.services import source_account_service as sources


def main() -> int:
    token = os.getenv("CANVAS_API_TOKEN")
    base_url = os.getenv("CANVAS_BASE_URL")
    if not token or not base_url:
        print("CANVAS_API_TOKEN and CANVAS_BASE_URL must be set", file=sys.stderr)
        return 2

    app = create_app("testing")
    with app.app_context():
        try:
            account_id = sources.connect_source(
                "smoke-test",
                "Canvas",
                "Smoke test",
                {"api_token": token, "base_url": base_url},
            )
            print(f"connected        {account_id}")

            records = recon.poll_source(account_id)
            print(f"polled           {len(records)} actionable assignments")
            for r in records[:10]:
                due = r.details.due_date.isoformat() if r.details.due_date else "-"
                print(f"    {r.external_id:>10}  {due:<26} {r.details.name}")

            work = recon.identify_changes(account_id, records)
            print(f"work items       {len(work)} (all new on a fresh database)")

            recon.disconnect(account_id)
            print("disconnected")
        except SyncError as exc:
            print(f"FAILED {exc.code}: {exc}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
