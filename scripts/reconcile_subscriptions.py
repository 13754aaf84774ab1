"""Pull subscription state from Stripe for one tenant or every linked tenant."""

import argparse
import sys

from dotenv import load_dotenv

from billing_sync.db import session_scope
from billing_sync.logging import configure_logging
from billing_sync.services.billing import ReconciliationService


def parse_args():
    parser = argparse.ArgumentParser(
        description="Overwrite local subscription records with Stripe's state."
    )
    parser.add_argument("--tenant-id", help="Only sync this tenant.")
    return parser.parse_args()


def main() -> int:
    load_dotenv()
    configure_logging()
    args = parse_args()
    with session_scope() as db:
        service = ReconciliationService(db)
        if args.tenant_id:
            record = service.sync(args.tenant_id)
            if record is None:
                print(f"Tenant {args.tenant_id} has no Stripe subscription.")
                return 0
            print(
                f"Synced tenant {args.tenant_id}: "
                f"{record.plan.value} ({record.status.value})"
            )
            return 0

        report = service.sync_all()
        print(f"Synced {report.synced} subscriptions, {len(report.failed)} failed.")
        for tenant_id in report.failed:
            print(f"  failed: {tenant_id}")
        return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
