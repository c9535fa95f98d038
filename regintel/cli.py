"""
Command-line interface for the regulatory ingestion pipeline.

Runs scans and merges synchronously in the current process, evaluates URLs against
the trust policy, dumps the lineage graph and works the review queue.
"""

import argparse
import json
import logging
import sys
from typing import Optional

from regintel.config.secrets import MissingAPIKeyError
from regintel.config.settings import load_settings
from regintel.logging_config import configure_logging
from regintel.ontology.policy import PolicyError
from regintel.pipeline.context import PipelineContext, build_context
from regintel.pipeline.ingest_job import process_merge_job, process_scan_job
from regintel.pipeline.lineage import build_lineage_graph
from regintel.pipeline.models import RunRecord, new_id
from regintel.pipeline.review import ReviewNotFound, ReviewValidationError, approve, reject
from regintel.services.extraction import ExtractionError

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _context(args: argparse.Namespace) -> PipelineContext:
    return build_context(load_settings(args.config))


def cmd_scan(args: argparse.Namespace) -> int:
    """Run one scan and print its summary."""
    context = _context(args)
    run = context.repository.create_run(
        RunRecord(id=new_id(), run_type="scan", jurisdiction=args.jurisdiction, days_window=args.days)
    )
    try:
        summary = process_scan_job(
            {
                "run_id": run.id,
                "jurisdiction": args.jurisdiction,
                "days": args.days,
                "max_results": args.max_results,
            },
            context,
        )
    except (PolicyError, MissingAPIKeyError, ExtractionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json({"run_id": run.id, **summary})
    return 0


def cmd_merge(args: argparse.Namespace) -> int:
    """Merge stored items of one jurisdiction."""
    context = _context(args)
    run = context.repository.create_run(
        RunRecord(id=new_id(), run_type="merge", jurisdiction=args.jurisdiction, days_window=0)
    )
    try:
        summary = process_merge_job({"run_id": run.id, "jurisdiction": args.jurisdiction}, context)
    except (MissingAPIKeyError, ExtractionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json({"run_id": run.id, **summary})
    return 0


def cmd_evaluate(args: argparse.Namespace) -> int:
    context = _context(args)
    try:
        evaluation = context.policy_store.evaluate(args.url)
    except PolicyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json(evaluation.to_dict())
    return 0


def cmd_lineage(args: argparse.Namespace) -> int:
    """Build the lineage graph and write it to stdout or a file."""
    graph = build_lineage_graph(_context(args).repository)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(graph, f, indent=2, ensure_ascii=False)
        print(f"Wrote {len(graph['nodes'])} nodes / {len(graph['edges'])} edges to {args.output}")
    else:
        _print_json(graph)
    return 0


def cmd_review(args: argparse.Namespace) -> int:
    context = _context(args)

    if args.review_command == "list":
        entries = context.repository.list_review_queue(args.status)
        if not entries:
            print("Review queue is empty")
            return 0
        for entry in entries:
            title = (entry.payload or {}).get("title", "")
            print(f"{entry.id}  [{entry.status}]  {title}")
            if args.verbose:
                print(f"    reason: {entry.reason}")
        return 0

    try:
        if args.review_command == "approve":
            result = approve(context, args.entry_id, reviewer=args.reviewer)
        else:
            result = reject(context, args.entry_id, reviewer=args.reviewer)
    except ReviewNotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ReviewValidationError as e:
        print(f"Error: {e.reason}", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    print(f"{args.entry_id}: {result['status']}")
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="regintel",
        description="Regulatory ingestion pipeline",
    )
    parser.add_argument("--config", help="Path to ingest.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    scan_parser = subparsers.add_parser("scan", help="Discover, extract and gate new documents")
    scan_parser.add_argument("--jurisdiction", default="EU")
    scan_parser.add_argument("--days", type=int, default=30, help="Date window in days")
    scan_parser.add_argument("--max-results", type=int, help="Documents to extract")
    scan_parser.set_defaults(func=cmd_scan)

    merge_parser = subparsers.add_parser("merge", help="Merge stored items into requirements")
    merge_parser.add_argument("--jurisdiction", default="EU")
    merge_parser.set_defaults(func=cmd_merge)

    evaluate_parser = subparsers.add_parser("evaluate", help="Evaluate a URL against the trust policy")
    evaluate_parser.add_argument("url")
    evaluate_parser.set_defaults(func=cmd_evaluate)

    lineage_parser = subparsers.add_parser("lineage", help="Build the lineage graph")
    lineage_parser.add_argument("--output", "-o", help="Output file (JSON)")
    lineage_parser.set_defaults(func=cmd_lineage)

    review_parser = subparsers.add_parser("review", help="Work the review queue")
    review_sub = review_parser.add_subparsers(dest="review_command", required=True)
    list_parser = review_sub.add_parser("list", help="List review entries")
    list_parser.add_argument("--status", default="pending", help="Filter by status")
    for name in ("approve", "reject"):
        action_parser = review_sub.add_parser(name, help=f"{name.capitalize()} a review entry")
        action_parser.add_argument("entry_id")
        action_parser.add_argument("--reviewer")
    review_parser.set_defaults(func=cmd_review)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
