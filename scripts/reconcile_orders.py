"""
Print the order/payment reconciliation report.

Usage: python scripts/reconcile_orders.py [--batch-size N] [--verbose]
"""
import argparse
import asyncio
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.database import close_db, get_db_context
from app.services.reconciliation import ReconciliationService


async def reconcile(batch_size: int, verbose: bool) -> int:
    async with get_db_context() as db:
        report = await ReconciliationService(db).build_report(batch_size=batch_size)

    print(f"Checked {report.checked} orders, {report.invalid_count} inconsistent")
    for code, count in sorted(report.summary().items()):
        print(f"  {code:<22} {count}")

    if verbose:
        for order, validation in report.invalid:
            print(f"{order.id}  {validation.reason_code.value:<22} {validation.details}")

    await close_db()
    return 1 if report.invalid_count else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Validate every order against its payment")
    parser.add_argument("--batch-size", type=int, default=500)
    parser.add_argument("--verbose", action="store_true", help="List each inconsistent order")
    args = parser.parse_args()

    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    sys.exit(asyncio.run(reconcile(args.batch_size, args.verbose)))
