#!/usr/bin/env python3
"""
QueueSync - Watchdog Health Check

Quick pulse check of the reconciliation pipeline:
- Local store connectivity
- Replica connectivity
- Queue sizes

Usage:
    python scripts/health_check.py          # Full check
    python scripts/health_check.py --json   # JSON output for monitoring

Exit Codes:
    0 = Healthy
    1 = Critical (a database is unreachable)
    2 = Warning (queue stats unavailable)
"""

import json
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

load_dotenv()

from queuesync.core import (  # noqa: E402
    QueueType,
    create_replica_repository,
    create_repository,
    get_settings,
)


# =============================================================================
# CHECK FUNCTIONS
# =============================================================================

def check_database(name: str, repo) -> tuple[str, bool]:
    """
    Check database connectivity.

    Returns:
        (status_message, is_healthy)
    """
    try:
        repo.ping()
        return f"✅ {name}: Connected", True

    except Exception as e:
        error_msg = str(e)[:50]
        return f"🔴 {name}: Connection failed ({error_msg})", False


def check_queue(repo) -> tuple[str, dict, bool]:
    """
    Check queue sizes.

    Returns:
        (status_message, stats, is_healthy)
    """
    stats = repo.get_queue_stats()
    unsigned = stats.get(QueueType.UNSIGNED_USERS.value, -1)
    outstanding = stats.get(QueueType.OUTSTANDING_REQUESTS.value, -1)

    if unsigned < 0 or outstanding < 0:
        return "⚠️  Queue: Failed to fetch some counts", stats, False

    lines = ["✅ Queue: Stats available"]
    lines.append(f"   ├─ Unsigned:     {unsigned:>6}")
    lines.append(f"   └─ Outstanding:  {outstanding:>6}")
    return "\n".join(lines), stats, True


# =============================================================================
# MAIN
# =============================================================================

def main():
    """Run all health checks and report status."""

    json_output = "--json" in sys.argv
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")

    if not json_output:
        print("")
        print("=" * 55)
        print(f"  QueueSync Watchdog [{timestamp}]")
        print("=" * 55)
        print("")

    is_critical = False
    is_warning = False
    results = {}

    try:
        settings = get_settings()
        local = create_repository(settings)
        replica = create_replica_repository(settings)
    except Exception as e:
        print(f"🔴 CRITICAL: Failed to initialize: {e}")
        sys.exit(1)

    # Check 1: Local store
    local_msg, local_healthy = check_database("Local store", local)
    results["local_store"] = {"healthy": local_healthy}
    if not json_output:
        print(local_msg)
    if not local_healthy:
        is_critical = True

    # Check 2: Replica
    replica_msg, replica_healthy = check_database("Replica", replica)
    results["replica"] = {"healthy": replica_healthy}
    if not json_output:
        print(replica_msg)
    if not replica_healthy:
        is_critical = True

    # Check 3: Queue
    if local_healthy:
        queue_msg, stats, queue_healthy = check_queue(local)
        results["queue"] = {"stats": stats, "healthy": queue_healthy}
        if not json_output:
            print(queue_msg)
        if not queue_healthy:
            is_warning = True

    if not json_output:
        print("")
        print("-" * 55)
        if is_critical:
            print("  Status: 🔴 CRITICAL - Immediate attention required")
        elif is_warning:
            print("  Status: ⚠️  WARNING - Check job logs")
        else:
            print("  Status: ✅ ALL SYSTEMS OPERATIONAL")
        print("-" * 55)
        print("")

    if json_output:
        results["timestamp"] = timestamp
        results["status"] = "critical" if is_critical else ("warning" if is_warning else "healthy")
        print(json.dumps(results, indent=2))

    if is_critical:
        sys.exit(1)
    elif is_warning:
        sys.exit(2)
    else:
        sys.exit(0)


if __name__ == "__main__":
    main()
