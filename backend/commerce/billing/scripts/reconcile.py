"""Reconcile every live subscription with the gateway.

Intended for a periodic job (cron, scheduled container):
    python -m commerce.billing.scripts.reconcile

Exits non-zero when any subscription could not be reconciled.
"""

import asyncio
import logging

from commerce.database import engine, session_scope
from commerce.services.reconciliation import reconcile_all


async def main() -> int:
    async with session_scope() as db:
        reports = await reconcile_all(db)
    await engine.dispose()

    changed = [r for r in reports if r.changed]
    failed = [r for r in reports if r.error]
    for report in changed:
        print(f"{report.subscription_id}: {'; '.join(report.changes)}")
    for report in failed:
        print(f"{report.subscription_id}: ERROR {report.error}")
    print(f"Checked {len(reports)}, changed {len(changed)}, failed {len(failed)}")
    return 1 if failed else 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    raise SystemExit(asyncio.run(main()))
