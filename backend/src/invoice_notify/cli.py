from __future__ import annotations

import argparse
import logging
import signal
import threading

from . import api
from .config import get_settings
from .jobs import TOPICS
from .queue_broker import create_queue_broker, worker_connection_options
from .store import InMemoryInvoiceStore
from .worker import Worker, run_workers

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Invoice notification pipeline runners.")
    parser.add_argument("--log-level", default="INFO")
    subcommands = parser.add_subparsers(dest="command", required=True)

    worker = subcommands.add_parser("worker", help="Consume email-invoice and email-receipt jobs.")
    worker.add_argument(
        "--topic",
        action="append",
        choices=list(TOPICS),
        default=[],
        help="Topic to consume; repeat for several. Defaults to all topics.",
    )

    reminders = subcommands.add_parser("reminders", help="Run the overdue sweep and reminder emails.")
    reminders.add_argument("--loop", action="store_true", help="Keep running daily at 00:00 UTC.")
    reminders.add_argument("--skip-overdue-sweep", action="store_true")

    relay = subcommands.add_parser("relay", help="Publish pending outbox entries to the queue.")
    relay.add_argument("--limit", type=int, default=100)
    return parser.parse_args(argv)


def _run_worker(args: argparse.Namespace) -> int:
    settings = get_settings()
    if settings.queue_backend == "postgres" and isinstance(api.invoice_store, InMemoryInvoiceStore):
        logger.error(
            "QUEUE_BACKEND=postgres needs a shared invoice store; set INVOICE_STORE_FACTORY before starting workers"
        )
        return 2
    broker = api.queue_broker
    if settings.queue_backend == "postgres":
        broker = create_queue_broker(settings, connection=worker_connection_options(settings))
    worker = Worker(
        store=api.invoice_store,
        broker=broker,
        render_client=api.render_client,
        email_client=api.email_client,
        operator_email=settings.operator_email,
        poll_interval_seconds=settings.worker_poll_interval_seconds,
    )
    run_workers(worker, topics=args.topic or TOPICS)
    return 0


def _run_reminders(args: argparse.Namespace) -> int:
    scheduler = api.reminder_scheduler()
    if args.loop:
        stop = threading.Event()

        def _handle_signal(signum, _frame) -> None:
            logger.info("received signal %s; stopping reminder loop", signum)
            stop.set()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
        scheduler.run_daily_loop(stop)
        return 0

    if args.skip_overdue_sweep:
        result = scheduler.run_reminders()
        overdue = 0
    else:
        daily = scheduler.run_daily()
        result = daily.reminders
        overdue = daily.overdue_marked
    logger.info("daily run: marked %s overdue; reminders sent %s failed %s", overdue, result.sent, result.failed)
    return 0


def _run_relay(args: argparse.Namespace) -> int:
    relayed = api.outbox_relay.relay_pending(limit=args.limit)
    logger.info("relayed %s outbox entry(ies)", relayed)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "worker":
        return _run_worker(args)
    if args.command == "reminders":
        return _run_reminders(args)
    return _run_relay(args)


if __name__ == "__main__":
    raise SystemExit(main())
