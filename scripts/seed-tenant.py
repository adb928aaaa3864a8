#!/usr/bin/env python
from __future__ import annotations

import sys
import uuid
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
API_ROOT = ROOT / "apps" / "api"
for path in (API_ROOT, ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.seed import seed_tenant  # noqa: E402


def main() -> int:
    if len(sys.argv) != 2:
        print("usage: scripts/seed-tenant.py <tenant-uuid>")
        return 1

    try:
        tenant_id = uuid.UUID(sys.argv[1].strip())
    except ValueError:
        print(f"'{sys.argv[1]}' is not a valid tenant id")
        return 1

    created = seed_tenant(tenant_id)
    print(f"tenant {tenant_id}: {created['templates']} templates, {created['rules']} rules created")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
