# src/plugin_console/main.py
"""
Plugin Console entry point.

Usage:
    plugin-console serve                 # API + job worker in one process
    plugin-console serve --port 9000
    plugin-console serve --no-worker     # API only; pair with exactly one `worker`
    plugin-console worker                # job worker only

Exactly one job worker may run per database and plugins directory: either
the one embedded in `serve`, or a single `worker` process next to
`serve --no-worker`.
"""
import argparse
import logging
import signal
import sys
import threading

from plugin_console.config import settings
from plugin_console.db.access import get_engine
from plugin_console.db.setup import initialize_database
from plugin_console.engine.queue import JobQueue
from plugin_console.engine.worker import PluginJobWorker
from plugin_console.logging_setup import setup_logging
from plugin_console.plugins.manager import PluginManager

logger = logging.getLogger(__name__)


def run_server(host: str, port: int, embedded_worker: bool = True):
    import uvicorn

    from plugin_console.server.api import create_app

    mode = "with embedded job worker" if embedded_worker else "without job worker"
    logger.info(f"Starting Plugin Console API on {host}:{port} ({mode})")
    app = create_app(app_settings=settings, embedded_worker=embedded_worker)
    uvicorn.run(app, host=host, port=port, log_config=None)


def run_worker():
    engine = get_engine(settings.database)
    initialize_database(engine)

    manager = PluginManager.from_settings(settings, engine)
    worker = PluginJobWorker(
        JobQueue(engine),
        manager,
        poll_interval=settings.worker.poll_interval_seconds,
        job_retention=settings.worker.job_retention,
    )

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    worker.start()
    try:
        stop.wait()
    finally:
        logger.info("Worker shutting down.")
        worker.stop()
        manager.close()


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Plugin install job queue and worker",
        epilog=(
            "Run exactly one job worker per database and plugins directory: "
            "`serve` alone, or `serve --no-worker` plus one `worker`."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API with an embedded job worker")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    serve.add_argument(
        "--no-worker",
        action="store_true",
        help="Do not start the embedded worker; jobs are run by a separate `worker` process",
    )

    subparsers.add_parser(
        "worker",
        help="Run the job worker without the API (only alongside `serve --no-worker`)",
    )

    args = parser.parse_args(argv)
    setup_logging(settings)

    try:
        if args.command == "serve":
            run_server(args.host, args.port, embedded_worker=not args.no_worker)
        else:
            run_worker()
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
