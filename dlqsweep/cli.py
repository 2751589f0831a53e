"""``dlq-sweep`` command: drain dead-letter sub-queues of one namespace.

Examples
--------
    # Purge every dead-letter sub-queue in a namespace
    dlq-sweep --namespace payments --resource-group prod-rg

    # Only one queue, report what would happen without touching it
    dlq-sweep --namespace payments --resource-group prod-rg --queue-name orders-queue --dry-run

    # One subscription, classify failures, four entities at a time
    dlq-sweep --namespace payments --resource-group prod-rg \\
        --topic-subscription billing/retry-sub --policy classify --concurrency 4

Exit codes: 0 succeeded, 1 failed (lookup error or fatal drain), 2 usage error,
130 cancelled by SIGINT/SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from typing import TYPE_CHECKING

from redis.exceptions import RedisError
from rich.console import Console

from . import __version__
from .broker.redis_streams import RedisStreamBroker
from .infrastructure.redis.client import RedisClient
from .logger import LoggingConfig, configure_logging, get_logger
from .settings import SweepSettings
from .sweep.config import EntityTarget
from .sweep.domain import ResourceScope
from .sweep.orchestrator import SweepOrchestrator
from .sweep.policy import POLICY_NAMES, build_policy
from .sweep.report import render_report

if TYPE_CHECKING:
    from collections.abc import Sequence

    from structlog.stdlib import BoundLogger

    from .sweep.config import SweepConfig
    from .sweep.domain import RunReport
    from .sweep.policy import DispositionPolicy

logger: BoundLogger = get_logger(__name__)

EXIT_FAILURE = 1


def build_parser(settings: SweepSettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dlq-sweep",
        description="Drain dead-letter sub-queues of every queue and topic subscription in a namespace",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="exit codes: 0 succeeded, 1 failed, 2 usage error, 130 cancelled",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    parser.add_argument(
        "--namespace",
        default=settings.namespace,
        help="Namespace to sweep (env DLQSWEEP_NAMESPACE)",
    )
    parser.add_argument(
        "--resource-group",
        default=settings.resource_group,
        help="Resource group of the namespace (env DLQSWEEP_RESOURCE_GROUP)",
    )

    target = parser.add_mutually_exclusive_group()
    target.add_argument("--queue-name", help="Drain only this queue's dead-letter sub-queue")
    target.add_argument(
        "--topic-subscription",
        metavar="TOPIC/SUBSCRIPTION",
        help="Drain only this subscription's dead-letter sub-queue",
    )

    parser.add_argument(
        "--max-messages",
        type=int,
        default=None,
        help=f"Messages inspected per entity at most (default: {settings.max_messages_per_entity})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be removed or redriven without changing anything",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help=f"Entities drained at the same time (default: {settings.concurrency_limit})",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help=f"Messages requested per receive (default: {settings.batch_size})",
    )
    parser.add_argument(
        "--receive-wait",
        type=float,
        default=None,
        help=f"Seconds a receive waits for messages (default: {settings.receive_wait_seconds})",
    )
    parser.add_argument(
        "--policy",
        choices=POLICY_NAMES,
        default=settings.policy,
        help="Disposition policy (default: %(default)s)",
    )

    parser.add_argument(
        "--log-level",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        type=str.upper,
        default=None,
        help="Log level (env LOG_LEVEL, default INFO)",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    return parser


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, cancel: asyncio.Event) -> list[signal.Signals]:
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):

        def request_stop(received: signal.Signals = sig) -> None:
            logger.warning("Stop requested, finishing in-flight messages", signal=received.name)
            cancel.set()

        try:
            loop.add_signal_handler(sig, request_stop)
        except NotImplementedError:
            logger.debug("Signal handlers not supported on this platform", signal=sig.name)
            continue
        installed.append(sig)
    return installed


async def run_sweep(
    settings: SweepSettings,
    scope: ResourceScope,
    config: SweepConfig,
    policy: DispositionPolicy,
    target: EntityTarget | None = None,
) -> RunReport:
    """Connect to Redis, run one sweep and disconnect.

    SIGINT and SIGTERM set the cancel event instead of killing the process, so
    the current message of every in-flight entity is finished.
    """
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = _install_signal_handlers(loop, cancel)
    try:
        async with RedisClient(settings.redis) as client:
            broker = RedisStreamBroker(client, scope, settings.broker)
            orchestrator = SweepOrchestrator(broker, broker, scope, config, policy)
            return await orchestrator.run(target, cancel=cancel)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def main(argv: Sequence[str] | None = None) -> int:
    settings = SweepSettings()
    parser = build_parser(settings)
    args = parser.parse_args(argv)

    if not args.namespace:
        parser.error("--namespace is required (or set DLQSWEEP_NAMESPACE)")
    if not args.resource_group:
        parser.error("--resource-group is required (or set DLQSWEEP_RESOURCE_GROUP)")

    logging_overrides: dict[str, object] = {}
    if args.log_level:
        logging_overrides["level"] = args.log_level
    if args.json_logs:
        logging_overrides["json_output"] = True
    configure_logging(LoggingConfig(**logging_overrides))

    try:
        scope = ResourceScope(namespace=args.namespace, resource_group=args.resource_group)
        config = settings.sweep_config(
            max_messages_per_entity=args.max_messages,
            batch_size=args.batch_size,
            receive_wait_seconds=args.receive_wait,
            concurrency_limit=args.concurrency,
            dry_run=args.dry_run,
        )
        target = None
        if args.queue_name or args.topic_subscription:
            target = EntityTarget(queue_name=args.queue_name, topic_subscription=args.topic_subscription)
        policy = build_policy(args.policy)
    except ValueError as exc:
        parser.error(str(exc))

    console = Console()
    try:
        report = asyncio.run(run_sweep(settings, scope, config, policy, target))
    except RedisError as exc:
        logger.error("Could not reach the broker", url=settings.redis.url, exc_info=exc)
        console.print(f"[bold red]Could not reach the broker at {settings.redis.url}[/bold red]: {exc}")
        return EXIT_FAILURE

    render_report(report, console)
    return report.exit_code
