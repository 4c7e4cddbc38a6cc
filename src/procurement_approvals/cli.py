"""
Command line entry point.

    procurement-approvals escalate [--db PATH]
    procurement-approvals route REQUISITION_ID [--db PATH]

Meant to be driven by cron or another external scheduler. Prints a JSON
summary on stdout; logs go to stderr.
"""

import argparse
import json
import sys

from loguru import logger

from .core.config import settings
from .core.errors import ApprovalWorkflowError
from .core.logging import setup_logging
from .services.storage import SQLiteProcurementStore
from .workflow import build_workflow


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="procurement-approvals", description="Procurement approval workflow")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", required=True)

    escalate = subparsers.add_parser("escalate", help="Run one escalation pass over overdue approvals")
    escalate.add_argument("--db", default=settings.approvals_db_path, help="SQLite database path")

    route = subparsers.add_parser("route", help="Route one requisition")
    route.add_argument("requisition_id")
    route.add_argument("--db", default=settings.approvals_db_path, help="SQLite database path")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(level=args.log_level)

    workflow = build_workflow(SQLiteProcurementStore(args.db))

    try:
        if args.command == "escalate":
            result = workflow.scheduler.process_escalations()
        else:
            result = workflow.router.process_requisition(args.requisition_id)
    except ApprovalWorkflowError as e:
        logger.error("Command failed", command=args.command, error=e.message)
        print(json.dumps({"error": type(e).__name__, "message": e.message, "details": e.details}, default=str))
        return 1

    print(result.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
