"""
Command-line interface for buyly operators.

Provides commands for:
- Granting and revoking the admin role
- Loading AI credits for a user
- Backfilling ``createdAt`` on old todos
- Exporting every auth user
"""

import argparse
import json
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from buyly.auth import AuthProvider, revoke_admin, set_admin
from buyly.bulk_writer import BulkWriter, Update
from buyly.config import load_dotenv, load_settings
from buyly.credits import add_credits
from buyly.document_store import DocumentStore
from buyly.errors import BuylyError
from buyly.s3 import push_store, sync_data_from_s3
from buyly.users import export_users, export_users_to_json
from buyly.utils import data_dir, iso_timestamp


def backfill_todos(store: DocumentStore, batch_size: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Give every todo without a ``createdAt`` one, in bulk batches."""
    created_at = iso_timestamp(now or datetime.now(timezone.utc))
    todos = store.query("todos")

    missing = [snap.ref for snap in todos if not snap.data.get("createdAt")]
    result = BulkWriter(store, batch_size).apply_to_all(missing, Update({"createdAt": created_at}))

    return {
        "success": True,
        "totalTodos": len(todos),
        "updatedTodos": result.processed,
        "skippedTodos": len(todos) - result.processed,
        "batches": result.batches_committed,
    }


@contextmanager
def _store(args):
    """Open the document store, optionally round-tripping it through S3."""
    db_path = Path(args.db) if args.db else data_dir("buyly.db")
    etag = sync_data_from_s3(db_path.parent) if args.sync else None
    store = DocumentStore(db_path)
    try:
        yield store
    finally:
        store.close()
        if args.sync:
            push_store(db_path.parent, etag, store.journal)


def cmd_set_admin(args):
    """Grant the admin role."""
    claims = set_admin(AuthProvider(), args.uid)
    print(f"Successfully set user {args.uid} as admin")
    print(f"User custom claims: {claims}")


def cmd_revoke_admin(args):
    """Revoke the admin role."""
    claims = revoke_admin(AuthProvider(), args.uid)
    print(f"Custom claims for {args.uid}: {claims}")


def cmd_load_credits(args):
    """Add AI credits to a user."""
    if args.amount <= 0:
        print("Valid positive credit amount is required")
        sys.exit(1)
    with _store(args) as store:
        result = add_credits(store, args.uid, args.amount, args.reason)
    print(f"Successfully added {args.amount} credits to user {args.uid}")
    print(f"New balance: {result['newBalance']}")
    print(f"Reason: {result['reason']}")
    print(f"Timestamp: {result['timestamp']}")


def cmd_backfill_todos(args):
    """Add createdAt to todos missing it."""
    settings = load_settings()
    with _store(args) as store:
        result = backfill_todos(store, settings["bulk_write"]["batch_size"])
    print(f"Total todos processed: {result['totalTodos']}")
    print(f"Todos updated: {result['updatedTodos']}")
    print(f"Todos skipped: {result['skippedTodos']}")


def cmd_export_users(args):
    """Export every auth user to the store or to a JSON file."""
    auth = AuthProvider()
    if args.json:
        output_dir = Path(args.output_dir) if args.output_dir else None
        result = export_users_to_json(auth, output_dir)
        print(f"JSON file saved to: {result['outputPath']}")
    else:
        with _store(args) as store:
            result = export_users(auth, store)

    print("\n" + "=" * 60)
    print("SUMMARY")
    print("=" * 60)
    print(json.dumps(result["summary"], indent=2))


def main():
    """Main entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="buyly: operator scripts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Make a user an admin
  buyly set-admin 3f1c9a52-7d4e-4b8a-9c1e-2a6f0d8b5e71

  # Give a user 500 credits
  buyly load-credits 3f1c9a52-7d4e-4b8a-9c1e-2a6f0d8b5e71 --amount 500 --reason "user bonus"

  # Export all users to data/output/ as JSON
  buyly export-users --json
""",
    )
    parser.add_argument("--db", help="Path to the document store (default: data/buyly.db)")
    parser.add_argument("--sync", action="store_true",
                        help="Pull the store from S3 first and push it back afterwards")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    admin_parser = subparsers.add_parser("set-admin", help="Grant the admin role")
    admin_parser.add_argument("uid", help="User id")

    revoke_parser = subparsers.add_parser("revoke-admin", help="Revoke the admin role")
    revoke_parser.add_argument("uid", help="User id")

    credits_parser = subparsers.add_parser("load-credits", help="Add AI credits to a user")
    credits_parser.add_argument("uid", help="User id")
    credits_parser.add_argument("--amount", "-a", type=int, required=True,
                                help="Number of credits to add")
    credits_parser.add_argument("--reason", "-r", default="user bonus",
                                help="Reason recorded with the credits")

    subparsers.add_parser("backfill-todos", help="Add createdAt to todos missing it")

    export_parser = subparsers.add_parser("export-users", help="Export every auth user")
    export_parser.add_argument("--json", action="store_true",
                               help="Write a JSON file instead of the totalUsers collection")
    export_parser.add_argument("--output-dir", "-o", help="Directory for the JSON file")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    # Dispatch to command handler
    commands = {
        "set-admin": cmd_set_admin,
        "revoke-admin": cmd_revoke_admin,
        "load-credits": cmd_load_credits,
        "backfill-todos": cmd_backfill_todos,
        "export-users": cmd_export_users,
    }

    handler = commands.get(args.command)
    try:
        handler(args)
    except BuylyError as e:
        print(f"Error: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
