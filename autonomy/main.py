"""Worker entry point for the booking autonomy runtime.

Runs the job runner and outbox poller without the HTTP surface.  The worker
owns its in-memory stores, so it loads the demo tenant and bookings at
start-up (see ``autonomy.demo``) unless ``--no-demo`` is passed.  With
``--once`` it reclaims stale jobs, runs a single job batch and a single
outbox batch, prints a summary and exits (useful for a quick local check).

Usage:
    python -m autonomy.main            # run until Ctrl-C
    python -m autonomy.main --debug    # debug logging
    python -m autonomy.main --once     # one pass, then exit
"""

from __future__ import annotations

import argparse
import json
import logging
import threading

from dotenv import load_dotenv

from autonomy.demo import seed_demo
from autonomy.orchestrator.runtime import Orchestrator, build_in_memory_orchestrator

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: INFO by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("botocore").setLevel(logging.WARNING)


def run_once(orchestrator: Orchestrator | None = None, *, demo: bool = True) -> dict:
    """One reclaim + job batch + outbox batch on the calling thread.

    Without an *orchestrator* a fresh in-memory runtime is built (and
    seeded with the demo data when *demo* is set) and shut down afterwards.
    """
    owned = orchestrator is None
    if owned:
        orchestrator = build_in_memory_orchestrator(autonomy_enabled=False)
        orchestrator.start()
        if demo:
            seed_demo(orchestrator)
    try:
        reclaimed = orchestrator.runner.reclaim_stale()
        executed = orchestrator.runner.run_once()
        outbox = orchestrator.ctx.gateway.process_outbox()
        return {
            "reclaimed": reclaimed,
            "jobs_executed": executed,
            "outbox": outbox.model_dump(),
        }
    finally:
        if owned:
            orchestrator.shutdown()


def main():
    parser = argparse.ArgumentParser(description="Booking autonomy worker")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--once", action="store_true",
        help="Run a single job and outbox batch, then exit",
    )
    parser.add_argument(
        "--no-demo", action="store_true",
        help="Start on empty stores instead of the demo tenant and bookings",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    if args.once:
        print(json.dumps(run_once(demo=not args.no_demo), indent=2))
        return

    orchestrator = build_in_memory_orchestrator()
    orchestrator.start()
    if not args.no_demo:
        seed_demo(orchestrator)
    if not orchestrator.runner.running:
        logger.warning("AUTONOMY_ENABLED is false: handlers are registered but no jobs will run")

    stop = threading.Event()
    try:
        while not stop.wait(60):
            logger.info("Status: %s", json.dumps(orchestrator.status()["jobs"]))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        orchestrator.shutdown()
        orchestrator.ctx.metrics.close()


if __name__ == "__main__":
    main()
