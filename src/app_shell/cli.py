import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from src.adapters.clock import SystemClock
from src.adapters.workers import DeliveryWorkerPool
from src.app_shell.config import (
    build_database,
    build_email_transport,
    pipeline_config,
    rules_path,
    run_migrations,
    validate_ops_rules,
)
from src.components.delivery import drain_queue
from src.components.idempotency import IdempotencyKeyError, RequestInFlightError
from src.components.ledger_purge import run_purge_cycle
from src.components.newsletter import EmailValidationError, run_add_subscriber
from src.components.outbox import IssueContent, IssueValidationError, parse_receipt, publish
from src.core.ports.db import StorageError
from src.rules.loader import load_rules
from src.rules.models import Rules

logger = logging.getLogger("cli")

CLI_CALLER_ID = "cli"


def get_rules() -> Rules:
    path = rules_path()
    if not path.exists():
        logger.error("Rules file %s not found.", path)
        sys.exit(1)

    rules = load_rules(path)
    validate_ops_rules(rules)
    return rules


def handle_migrate(rules: Rules, args: argparse.Namespace) -> int:
    applied = run_migrations(rules)
    print(f"Applied {len(applied)} migration(s).")
    return 0


def handle_add_subscriber(rules: Rules, args: argparse.Namespace) -> int:
    db = build_database(rules)
    try:
        with db.begin() as uow:
            subscriber = run_add_subscriber(
                uow.subscribers, args.email, confirmed=not args.pending
            )
            uow.commit()
    except EmailValidationError as e:
        logger.error("%s", e)
        return 2
    print(f"{subscriber.email}: {subscriber.status.value}")
    return 0


def handle_publish(rules: Rules, args: argparse.Namespace) -> int:
    cfg = pipeline_config(rules)
    content = IssueContent(
        title=args.title,
        html_body=Path(args.html_file).read_text() if args.html_file else args.html,
        text_body=Path(args.text_file).read_text() if args.text_file else args.text,
    )
    try:
        response = publish(
            build_database(rules),
            args.caller,
            args.key,
            content,
            clock=SystemClock(),
            config=cfg.publish,
        )
    except (IdempotencyKeyError, IssueValidationError) as e:
        logger.error("%s", e)
        return 2
    except RequestInFlightError as e:
        logger.error("%s", e)
        return 3

    receipt = parse_receipt(response)
    print(f"Issue {receipt.issue_id}: {receipt.enqueued} deliveries enqueued.")
    print(receipt.message)
    return 0


def handle_drain(rules: Rules, args: argparse.Namespace) -> int:
    cfg = pipeline_config(rules)
    processed = drain_queue(
        build_database(rules),
        build_email_transport(rules),
        clock=SystemClock(),
        config=cfg.delivery,
        max_iterations=args.max_tasks,
    )
    print(f"Processed {processed} delivery task(s).")
    return 0


def handle_purge(rules: Rules, args: argparse.Namespace) -> int:
    outcome = run_purge_cycle(
        build_database(rules),
        clock=SystemClock(),
        retention_minutes=args.retention_minutes or rules.idempotency.retention_minutes,
    )
    if not outcome.succeeded:
        logger.error("Purge failed: %s", outcome.error)
        return 1
    print(f"Purged {outcome.deleted} idempotency record(s).")
    return 0


def handle_workers(rules: Rules, args: argparse.Namespace) -> int:
    cfg = pipeline_config(rules)
    pool = DeliveryWorkerPool(
        build_database(rules),
        build_email_transport(rules),
        SystemClock(),
        delivery_config=cfg.delivery,
        purge_config=cfg.purge,
        workers=args.workers or cfg.workers,
        run_purge=cfg.purge_enabled,
    )
    stopped = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        logger.info("Received signal %d, stopping workers", signum)
        stopped.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    pool.start()
    stopped.wait()
    pool.shutdown(timeout=args.shutdown_timeout)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Newsletter publishing pipeline CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # migrate
    subparsers.add_parser("migrate", help="Apply pending database migrations")

    # add-subscriber
    sub_parser = subparsers.add_parser("add-subscriber", help="Register a subscriber")
    sub_parser.add_argument("email")
    sub_parser.add_argument(
        "--pending", action="store_true", help="Leave unconfirmed (will not receive issues)"
    )

    # publish
    pub_parser = subparsers.add_parser("publish", help="Publish a newsletter issue")
    pub_parser.add_argument("--title", required=True)
    pub_parser.add_argument("--key", required=True, help="Idempotency key")
    pub_parser.add_argument("--caller", default=CLI_CALLER_ID, help="Caller id for the ledger")
    html = pub_parser.add_mutually_exclusive_group(required=True)
    html.add_argument("--html")
    html.add_argument("--html-file")
    text = pub_parser.add_mutually_exclusive_group(required=True)
    text.add_argument("--text")
    text.add_argument("--text-file")

    # drain
    drain_parser = subparsers.add_parser("drain", help="Deliver queued emails, then exit")
    drain_parser.add_argument("--max-tasks", type=int, default=10_000)

    # purge
    purge_parser = subparsers.add_parser("purge", help="Purge expired idempotency records")
    purge_parser.add_argument("--retention-minutes", type=int, default=None)

    # workers
    workers_parser = subparsers.add_parser("workers", help="Run delivery + purge workers")
    workers_parser.add_argument("--workers", type=int, default=None)
    workers_parser.add_argument("--shutdown-timeout", type=float, default=30.0)

    return parser


HANDLERS = {
    "migrate": handle_migrate,
    "add-subscriber": handle_add_subscriber,
    "publish": handle_publish,
    "drain": handle_drain,
    "purge": handle_purge,
    "workers": handle_workers,
}


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    rules = get_rules()

    try:
        return HANDLERS[args.command](rules, args)
    except StorageError as e:
        logger.error("Database error during %s: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
