"""Commerce management CLI.

Creates and drops the database schema and runs the expiry sweep, which is
meant to be scheduled (cron, K8s CronJob) in production.

Usage:
    python src/manage.py setup-db   # Create all tables
    python src/manage.py drop-db    # Drop all tables
    python src/manage.py sweep      # Reclaim expired holds once
"""

import argparse
import sys


def _domain():
    from commerce.domain import commerce

    commerce.init()
    return commerce


def setup_database():
    from commerce.utils.db import setup_db

    print("Initializing commerce domain...")
    domain = _domain()
    print("Creating commerce database schema...")
    setup_db(domain)
    print("Done.")


def drop_database():
    from commerce.utils.db import drop_db

    print("Initializing commerce domain...")
    domain = _domain()
    print("Dropping commerce database schema...")
    drop_db(domain)
    print("Done.")


def run_sweep(batch_size):
    from commerce.inventory.sweep import sweep_expired

    domain = _domain()
    with domain.domain_context():
        counts = sweep_expired(batch_size=batch_size)
    print(f"Expired reservations: {counts['reservations']}")
    print(f"Expired sessions:     {counts['sessions']}")
    print(f"Expired orders:       {counts['orders']}")


def main():
    from commerce.utils.logging import configure_logging

    parser = argparse.ArgumentParser(description="Commerce management")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("setup-db", help="Create all database tables")
    subparsers.add_parser("drop-db", help="Drop all database tables")
    sweep_parser = subparsers.add_parser("sweep", help="Reclaim expired reservations, sessions and orders")
    sweep_parser.add_argument("--batch-size", type=int, default=500, help="Candidates per kind (default: 500)")

    args = parser.parse_args()
    configure_logging()

    if args.command == "setup-db":
        setup_database()
    elif args.command == "drop-db":
        drop_database()
    elif args.command == "sweep":
        run_sweep(args.batch_size)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
