"""
Worker process: wires the pipeline, starts the job pools and serves the HTTP API.

Usage:
    python -m regintel.worker --port 8000
"""

import argparse
import logging
import sys
from typing import Optional

from regintel.config.settings import load_settings
from regintel.logging_config import configure_logging
from regintel.pipeline.context import PipelineContext, build_context
from regintel.pipeline.ingest_job import process_merge_job, process_scan_job
from regintel.pipeline.queue import JobQueue

logger = logging.getLogger(__name__)

JOB_SCAN = "scan"
JOB_MERGE = "merge"


def build_job_queue(context: PipelineContext) -> JobQueue:
    """Register the scan and merge handlers with their configured pool sizes."""
    concurrency = context.settings.worker_concurrency
    jobs = JobQueue()
    jobs.register(
        JOB_SCAN,
        lambda payload, cancel_event: process_scan_job(payload, context, cancel_event=cancel_event),
        concurrency=concurrency.get(JOB_SCAN, 2),
    )
    jobs.register(
        JOB_MERGE,
        lambda payload, cancel_event: process_merge_job(payload, context),
        concurrency=concurrency.get(JOB_MERGE, 1),
    )
    return jobs


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Regulatory ingestion worker and API")
    parser.add_argument("--config", help="Path to ingest.yaml")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    import uvicorn

    from regintel.api.server import create_app

    settings = load_settings(args.config)
    context = build_context(settings)
    jobs = build_job_queue(context)
    jobs.start()
    try:
        uvicorn.run(create_app(context, jobs), host=args.host, port=args.port)
    finally:
        jobs.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
