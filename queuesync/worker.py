#!/usr/bin/env python3
"""
QueueSync - Job Runner

Runs one reconciliation job per invocation. The external scheduler fires
these hourly:
    :00 signature-cleanup
    :05 new-users
    :10 outstanding-cleanup
    :15 new-requirements
    :25 agent-attribution

Usage:
    queuesync new-users --hours-back 2
    queuesync signature-cleanup --batch-size 200 --dry-run

Prints the job result as JSON. Exit code 0 on success, 1 on failure.
"""

import argparse
import json
import sys
from typing import Optional

from .attribution.agents import ConversionAgentAttribution
from .cleanup.outstanding import OutstandingRequirementsCleanup
from .cleanup.signature import SignatureConversionCleanup
from .core import (
    JobOptions,
    LOGGER_NAME,
    Settings,
    create_replica_repository,
    create_repository,
    get_database_circuits,
    get_settings,
    setup_logging,
)
from .core.batching import BatchJob
from .discovery.new_requirements import NewRequirementsDiscovery
from .discovery.new_users import NewUsersDiscovery

# =============================================================================
# JOB REGISTRY
# =============================================================================
JOBS: dict[str, type[BatchJob]] = {
    NewUsersDiscovery.name: NewUsersDiscovery,
    NewRequirementsDiscovery.name: NewRequirementsDiscovery,
    SignatureConversionCleanup.name: SignatureConversionCleanup,
    OutstandingRequirementsCleanup.name: OutstandingRequirementsCleanup,
    ConversionAgentAttribution.name: ConversionAgentAttribution,
}


class UnknownJobError(KeyError):
    pass


def build_job(name: str, settings: Settings, local=None, replica=None) -> BatchJob:
    """
    Construct a job wired to the real repositories and shared breakers.

    Args:
        name: Registry key (e.g. "signature-cleanup")
        settings: Application settings
        local: Override for the local store repository
        replica: Override for the replica repository

    Raises:
        UnknownJobError: If name is not registered
    """
    if name not in JOBS:
        raise UnknownJobError(name)

    local_breaker, replica_breaker = get_database_circuits(settings)
    return JOBS[name](
        local if local is not None else create_repository(settings),
        replica if replica is not None else create_replica_repository(settings),
        settings,
        local_breaker=local_breaker,
        replica_breaker=replica_breaker,
    )


# =============================================================================
# CLI
# =============================================================================
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="queuesync",
        description="Run one call-queue reconciliation job",
    )
    parser.add_argument("job", choices=sorted(JOBS), help="Job to run")
    parser.add_argument("--hours-back", type=float, default=None, help="Lookback window in hours")
    parser.add_argument("--batch-size", type=int, default=None, help="Items per batch")
    parser.add_argument("--dry-run", action="store_true", help="Read everything, write nothing")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    args = parse_args(argv)

    settings = get_settings()
    # stdout carries the JSON result
    logger = setup_logging(LOGGER_NAME, settings.log_path, settings.log_level, stream=sys.stderr)

    try:
        options = JobOptions(hours_back=args.hours_back, batch_size=args.batch_size, dry_run=args.dry_run)
    except ValueError as e:
        logger.error(f"Invalid options: {e}")
        return 1

    try:
        job = build_job(args.job, settings)
    except Exception as e:
        logger.critical(f"Failed to initialize {args.job}: {e}")
        print(json.dumps({"success": False, "errors": [str(e)], "summary": f"{args.job} failed to start"}))
        return 1

    result = job.run(options)
    print(json.dumps(result.to_wire(), indent=2))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
