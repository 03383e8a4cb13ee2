#!/usr/bin/env python3
"""
Offline Queue Viewer

CLI tool for inspecting commands waiting to sync and the dead-letter table.
"""

import argparse
import sys
from pathlib import Path

from sitevoice.adapters.persistence.offline_queue import SQLiteOfflineQueue


def print_separator(char="=", length=70):
    """Print a separator line."""
    print(char * length)


def print_statistics(queue: SQLiteOfflineQueue):
    """Print pending and dead-letter counts per tenant."""
    print_separator()
    print("📊 OFFLINE QUEUE STATISTICS")
    print_separator()
    print()

    stats = queue.get_statistics()

    print(f"Pending:     {stats['total_pending']}")
    print(f"Dead letter: {stats['total_dead_letter']}")
    print()

    if stats['pending_by_tenant']:
        print("Pending by Tenant:")
        print("-" * 40)
        for tenant, info in sorted(stats['pending_by_tenant'].items(), key=lambda x: -x[1]['count']):
            print(f"  {tenant:25s}: {info['count']:5d} (oldest {info['oldest']})")
        print()

    if stats['dead_letter_by_tenant']:
        print("Dead Letter by Tenant:")
        print("-" * 40)
        for tenant, count in stats['dead_letter_by_tenant'].items():
            print(f"  {tenant:25s}: {count:5d}")
        print()


def print_pending(queue: SQLiteOfflineQueue, tenant: str, limit: int = 20):
    """Print a tenant's pending commands in replay order."""
    print_separator()
    print(f"⏳ PENDING FOR {tenant}")
    print_separator()
    print()

    entries = queue.pending(tenant, limit=limit)

    if not entries:
        print("Nothing waiting to sync.")
        return

    for entry in entries:
        print(f"#{entry.sequence} [{entry.enqueued_at.isoformat()}] {entry.operation}")
        print(f"   Run:     {entry.run_id}")
        print(f"   By:      {entry.principal_id or '-'}")
        print(f"   Intent:  {entry.intent.to_payload()['entities']}")
        if entry.retry_count:
            print(f"   Retries: {entry.retry_count} (last error: {entry.last_error})")
        print()


def print_dead_letters(queue: SQLiteOfflineQueue, tenant: str = None, limit: int = 20):
    """Print commands that could not be replayed."""
    print_separator()
    print("🪦 DEAD LETTER")
    print_separator()
    print()

    letters = queue.get_dead_letters(tenant_id=tenant, limit=limit)

    if not letters:
        print("No dead-lettered commands.")
        return

    for i, letter in enumerate(letters, 1):
        print(f"{i}. [{letter['moved_at']}] {letter['tenant_id']} {letter['operation']}")
        print(f"   Run:     {letter['run_id']}")
        print(f"   Retries: {letter['retry_count']}")
        print(f"   Error:   {letter['last_error']}")
        print()


def export_queue(queue: SQLiteOfflineQueue, output_file: str, tenant: str = None):
    """Export pending commands to a JSON file."""
    print_separator()
    print("💾 EXPORTING QUEUE")
    print_separator()
    print()

    print(f"Exporting to: {output_file}")
    count = queue.export_to_json(output_file, tenant_id=tenant)
    print(f"✅ Exported {count} entries successfully")
    print()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="SiteVoice Offline Queue Viewer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # View statistics
  python view_offline_queue.py --stats

  # View pending commands of one tenant
  python view_offline_queue.py --pending acme

  # View dead-lettered commands
  python view_offline_queue.py --dead-letter

  # Export to JSON
  python view_offline_queue.py --export queue_backup.json
        """,
    )

    parser.add_argument(
        "--db",
        type=str,
        default="~/.sitevoice/offline.db",
        help="Path to offline queue database (default: ~/.sitevoice/offline.db)",
    )

    parser.add_argument(
        "--stats",
        action="store_true",
        help="Show statistics",
    )

    parser.add_argument(
        "--pending",
        type=str,
        metavar="TENANT",
        help="Show pending commands of a tenant",
    )

    parser.add_argument(
        "--dead-letter",
        action="store_true",
        help="Show dead-lettered commands",
    )

    parser.add_argument(
        "--tenant",
        type=str,
        help="Restrict --dead-letter and --export to one tenant",
    )

    parser.add_argument(
        "--export",
        type=str,
        metavar="FILE",
        help="Export pending commands to JSON file",
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Limit number of results (default: 20)",
    )

    args = parser.parse_args()

    db_path = Path(args.db).expanduser()
    if not db_path.exists():
        print(f"❌ Error: Database not found at {db_path}")
        print()
        print("Nothing has been queued yet. Commands are queued when storage is unreachable:")
        print("  sitevoice --offline -c \"log 8 hours for framing\"")
        sys.exit(1)

    try:
        queue = SQLiteOfflineQueue(db_path=args.db, create_if_missing=False)
    except Exception as e:
        print(f"❌ Error: Could not open database: {e}")
        sys.exit(1)

    if not any([args.stats, args.pending, args.dead_letter, args.export]):
        parser.print_help()
        sys.exit(0)

    if args.stats:
        print_statistics(queue)

    if args.pending:
        print_pending(queue, args.pending, limit=args.limit)

    if args.dead_letter:
        print_dead_letters(queue, tenant=args.tenant, limit=args.limit)

    if args.export:
        export_queue(queue, args.export, tenant=args.tenant)

    print_separator()


if __name__ == "__main__":
    main()
