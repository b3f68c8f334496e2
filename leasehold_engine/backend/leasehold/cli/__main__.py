# backend/leasehold/cli/__main__.py
from __future__ import annotations

import argparse
from datetime import date

from leasehold.cli.seed_demo import seed_demo
from leasehold.db import SessionLocal
from leasehold.logging_config import configure_logging
from leasehold.services.rent_batches import run_expiry_sweep, run_late_fee_sweep, run_reminder_sweep
from leasehold.workers.notification_worker import drain

SWEEPS = {
    "late-fees": run_late_fee_sweep,
    "expiry": run_expiry_sweep,
    "reminders": run_reminder_sweep,
}


def _run_sweep(name: str, today: date | None) -> dict:
    db = SessionLocal()
    try:
        return SWEEPS[name](db, today=today).as_dict()
    finally:
        db.close()


def main() -> None:
    p = argparse.ArgumentParser(prog="python -m leasehold.cli")
    sub = p.add_subparsers(dest="command", required=True)

    for name in SWEEPS:
        sp = sub.add_parser(name, help=f"run the {name} sweep once")
        sp.add_argument("--date", type=date.fromisoformat, default=None, help="run as of YYYY-MM-DD (default: today, UTC)")

    np = sub.add_parser("notifications", help="drain due notification jobs in-process")
    np.add_argument("--limit", type=int, default=100)
    np.add_argument("--concurrency", type=int, default=None)

    sd = sub.add_parser("seed-demo", help="create demo users and a property")
    sd.add_argument("--landlord-email", default="landlord@demo.local")
    sd.add_argument("--tenant-email", default="tenant@demo.local")

    args = p.parse_args()
    configure_logging()

    if args.command in SWEEPS:
        print(_run_sweep(args.command, args.date))
    elif args.command == "notifications":
        outcomes = drain(limit=args.limit, concurrency=args.concurrency)
        print({"ok": True, "processed": len(outcomes), "outcomes": [o.as_dict() for o in outcomes]})
    elif args.command == "seed-demo":
        out = seed_demo(landlord_email=args.landlord_email, tenant_email=args.tenant_email)
        print(
            {
                "ok": True,
                "admin_id": out.admin_id,
                "landlord_id": out.landlord_id,
                "tenant_id": out.tenant_id,
                "property_id": out.property_id,
            }
        )


if __name__ == "__main__":
    main()
