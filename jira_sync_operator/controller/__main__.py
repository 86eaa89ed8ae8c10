"""
JIRASync operator entry point.

Usage:
    python -m jira_sync_operator.controller [OPTIONS]

Options:
    --namespace NS   Namespace to watch (default: from config)
    --workers N      Concurrent reconcile workers (default: from config)
"""
from __future__ import annotations

import argparse
import sys

from .loop import run_operator


def main() -> int:
    """Main entry point for the operator CLI."""
    parser = argparse.ArgumentParser(
        description="JIRASync operator - reconciles JIRASync resources into sync jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with default settings
    python -m jira_sync_operator.controller

    # Watch a single namespace with four workers
    python -m jira_sync_operator.controller --namespace jira-sync --workers 4

    # Keep state in SQLite instead of memory
    RESOURCE_STORE_URL=sqlite:///./jira_sync.db python -m jira_sync_operator.controller
        """,
    )

    parser.add_argument(
        "--namespace",
        type=str,
        default=None,
        help="Namespace to watch (default: from config)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Concurrent reconcile workers (default: from config)",
    )

    args = parser.parse_args()

    print("Starting JIRASync operator...")
    print(f"  Namespace: {args.namespace or 'from config'}")
    print(f"  Workers: {args.workers or 'from config'}")
    print()

    try:
        run_operator(namespace=args.namespace, workers=args.workers)
        return 0
    except KeyboardInterrupt:
        print("\nOperator stopped by user")
        return 0
    except Exception as e:
        print(f"Operator error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
