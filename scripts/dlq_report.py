#!/usr/bin/env python3
"""
Dead-letter queue health report.

Run: python scripts/dlq_report.py [--days 7] [--limit 20]

Prints entry counts by status and the most recent permanently failed
entries. Saves JSON report to scripts/dlq_report_{timestamp}.json.

Exit codes:
  0 - Healthy (no FAILED entries in the window)
  1 - FAILED entries found
  2 - Report failed (database connection error)
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from fixbot import database
from fixbot.database import init_db, close_db, utcnow
from fixbot.models.dead_letter_message import DeadLetterStatus
from fixbot.services.dead_letter import DeadLetterQueue

project_root = Path(__file__).parent.parent


def format_report(report: dict) -> str:
    """
    Format DLQ report as human-readable text

    Args:
        report: Report dict built by build_report

    Returns:
        Formatted report string
    """
    lines = []
    lines.append("=" * 80)
    lines.append("DEAD LETTER QUEUE REPORT")
    lines.append("=" * 80)
    lines.append("")

    lines.append("SUMMARY")
    lines.append("-" * 80)
    lines.append(f"Report Period:             {report['days']} days")
    lines.append(f"Report Timestamp:          {report['generated_at']}")
    lines.append("")

    lines.append("ENTRIES BY STATUS")
    lines.append("-" * 80)
    for status, values in report["by_status"].items():
        lines.append(f"{status:<26} {values['count']:>6}   avg retries {values['avg_retries']:.2f}")
    lines.append("")

    failed = report["recent_failed"]
    if failed:
        lines.append("RECENT PERMANENT FAILURES")
        lines.append("-" * 80)
        for entry in failed:
            lines.append(
                f"#{entry['id']:<6} {entry['message_type']:<12} {entry['message_id']:<40} "
                f"{entry['error_code'] or '-'}"
            )
            if entry["error_message"]:
                lines.append(f"        {entry['error_message'][:100]}")
        lines.append("")

    return "\n".join(lines)


async def build_report(queue: DeadLetterQueue, days: int, limit: int) -> dict:
    by_status = await queue.stats(days=days)
    failed = await queue.list_entries(status=DeadLetterStatus.FAILED.value, limit=limit)
    return {
        "generated_at": utcnow().isoformat(),
        "days": days,
        "by_status": by_status,
        "recent_failed": [entry.to_dict() for entry in failed],
    }


async def run(days: int, limit: int) -> dict:
    try:
        return await build_report(DeadLetterQueue(database.SessionLocal), days, limit)
    finally:
        await close_db()


def main():
    """Report script entry point"""
    parser = argparse.ArgumentParser(
        description="Summarize the dead-letter queue"
    )
    parser.add_argument(
        "--days",
        type=int,
        default=7,
        help="Number of days to look back (default: 7)"
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum number of failed entries to list (default: 20)"
    )
    args = parser.parse_args()

    print("Initializing database connection...")

    if init_db() is None:
        print("ERROR: Database not configured. Set DATABASE_URL environment variable.")
        sys.exit(2)

    try:
        report = asyncio.run(run(args.days, args.limit))
    except Exception as e:
        print(f"ERROR: Report failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(2)

    print(format_report(report))

    # Save JSON report
    timestamp = utcnow().strftime("%Y%m%d_%H%M%S")
    report_path = project_root / "scripts" / f"dlq_report_{timestamp}.json"

    try:
        with open(report_path, 'w') as f:
            json.dump(report, f, indent=2, default=str)
        print(f"\nJSON report saved to: {report_path}")
    except OSError as e:
        print(f"\nWARNING: Failed to save JSON report: {e}")

    failed_count = report["by_status"][DeadLetterStatus.FAILED.value]["count"]
    if failed_count == 0:
        print("\n✓ DLQ HEALTHY: No permanently failed messages")
        sys.exit(0)
    else:
        print(f"\n✗ DLQ ATTENTION: {failed_count} permanently failed message(s)")
        sys.exit(1)


if __name__ == "__main__":
    main()
