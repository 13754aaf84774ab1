"""Print collected revenue and refunds, for every tenant or just one."""

import argparse
import sys

from dotenv import load_dotenv

from billing_sync.db import session_scope
from billing_sync.logging import configure_logging
from billing_sync.services.billing import payments
from billing_sync.services.billing.summary import MINOR_UNITS


def parse_args():
    parser = argparse.ArgumentParser(
        description="Sum collected payments and refunds from the payment ledger."
    )
    parser.add_argument("--tenant-id", help="Only count this tenant's payments.")
    return parser.parse_args()


def main() -> int:
    load_dotenv()
    configure_logging()
    args = parse_args()
    with session_scope() as db:
        totals = payments.totals(db, args.tenant_id)
    scope = f"tenant {args.tenant_id}" if args.tenant_id else "all tenants"
    print(
        f"Payments for {scope}: {totals['count']} collected, "
        f"revenue {totals['total_amount'] / MINOR_UNITS:.2f}, "
        f"refunded {totals['refunded_amount'] / MINOR_UNITS:.2f}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
