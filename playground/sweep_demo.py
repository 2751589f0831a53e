"""
Dead-Letter Sweep Walkthrough
=============================

This example seeds a local Redis with a namespace of queues and topic
subscriptions, then sweeps their dead-letter streams:

1. Seeding main streams, consumer groups and dead-letter entries
2. A dry run with the ``classify`` policy (nothing is changed)
3. A real sweep that redrives transient failures, discards permanent ones
   and leaves unclassified ones in place
4. Inspecting what was left behind

Prerequisites: Redis Setup
--------------------------
    docker run -d --name redis -p 6379:6379 redis:7-alpine
    redis-cli ping

Inspect Sweep Data
------------------
    # Every stream of the demo namespace
    redis-cli --scan --pattern "demo:playground-rg:payments:*"

    # Entries still parked in a dead-letter stream
    redis-cli XPENDING "demo:playground-rg:payments:queue:orders/\\$DeadLetterQueue" dlq-sweep

    # Redriven copies on the main stream
    redis-cli XRANGE demo:playground-rg:payments:queue:orders - + COUNT 5

Running This Example
--------------------
    uv run python playground/sweep_demo.py
"""

from __future__ import annotations

import asyncio
import base64
import json

from rich.console import Console
from rich.panel import Panel

from dlqsweep.broker import RedisStreamBroker, StreamBrokerConfig
from dlqsweep.infrastructure.redis import RedisClient, RedisConfig, RedisConnectionSettings
from dlqsweep.logger import LoggingConfig, configure_logging
from dlqsweep.sweep import (
    ClassifyingPolicy,
    DrainConfig,
    Entity,
    ResourceScope,
    SweepConfig,
    SweepOrchestrator,
    render_report,
)

console = Console()

SCOPE = ResourceScope(namespace="payments", resource_group="playground-rg")
BROKER_CONFIG = StreamBrokerConfig(key_prefix="demo", lock_duration_ms=5_000)

SEED: dict[Entity, list[tuple[str, str]]] = {
    Entity.queue("orders"): [
        ("Timeout", "ConnectionError: upstream reset"),
        ("MaxDeliveryCountExceeded", "handler raised KeyError"),
        ("DeserializationFailed", "ValidationError: amount must be positive"),
    ],
    Entity.queue("refunds"): [],
    Entity.subscription("billing", "retry-sub"): [
        ("TTLExpiredException", "message expired before delivery"),
        ("ServiceUnavailable", "ledger returned 503"),
    ],
}


# =============================================================================
# 1. SEEDING
# =============================================================================


async def seed(redis_client: RedisClient) -> None:
    """Create main streams, subscription groups and dead-letter entries."""
    prefix = BROKER_CONFIG.scope_prefix(SCOPE)

    async with redis_client.aget_client() as client:
        async for key in client.scan_iter(match=f"{prefix}:*"):
            await client.delete(key)

        for entity, failures in SEED.items():
            main_key = BROKER_CONFIG.main_key(SCOPE, entity)
            await client.xadd(main_key, {"message_id": "bootstrap", "body": ""})
            if entity.subscription_name:
                await client.xgroup_create(main_key, entity.subscription_name, id="$")

            dead_letter_key = BROKER_CONFIG.dead_letter_key(SCOPE, entity)
            for index, (reason, description) in enumerate(failures):
                body = json.dumps({"order_id": f"ord-{index}", "amount": 42})
                await client.xadd(
                    dead_letter_key,
                    {
                        "message_id": f"{entity.path}-{index}",
                        "body": base64.b64encode(body.encode()).decode(),
                        "delivery_count": "3",
                        "dead_letter_reason": reason,
                        "dead_letter_description": description,
                    },
                )

    console.print(
        Panel(
            "\n".join(f"{entity.path}: {len(failures)} dead-lettered" for entity, failures in SEED.items()),
            title="Seeded namespace",
        )
    )


# =============================================================================
# 2. DRY RUN
# =============================================================================


async def dry_run(redis_client: RedisClient) -> None:
    broker = RedisStreamBroker(redis_client, SCOPE, BROKER_CONFIG)
    orchestrator = SweepOrchestrator(
        broker,
        broker,
        SCOPE,
        SweepConfig(drain=DrainConfig(receive_wait_seconds=0), dry_run=True),
        ClassifyingPolicy(),
    )

    before = {entity.path: await broker.dead_letter_depth(entity) for entity in SEED}
    report = await orchestrator.run()
    render_report(report, console)

    for action in orchestrator.simulated_actions:
        console.print(f"  would {action.operation} [cyan]{action.message_id}[/cyan] on {action.entity_path}")

    for entity in SEED:
        after = await broker.dead_letter_depth(entity)
        console.print(f"  {entity.path}: depth {before[entity.path]} -> {after} (dry run changes nothing)")


# =============================================================================
# 3. REAL SWEEP
# =============================================================================


async def sweep(redis_client: RedisClient) -> None:
    # The dry run left its entries locked; wait for the lease to run out.
    wait_seconds = BROKER_CONFIG.lock_duration_ms / 1000 + 0.5
    console.print(f"[dim]Waiting {wait_seconds:.1f}s for dry-run locks to lapse...[/dim]")
    await asyncio.sleep(wait_seconds)

    broker = RedisStreamBroker(redis_client, SCOPE, BROKER_CONFIG)
    orchestrator = SweepOrchestrator(
        broker,
        broker,
        SCOPE,
        SweepConfig(drain=DrainConfig(receive_wait_seconds=0), concurrency_limit=2),
        ClassifyingPolicy(),
    )
    render_report(await orchestrator.run(), console)


# =============================================================================
# 4. INSPECTION
# =============================================================================


async def inspect(redis_client: RedisClient) -> None:
    lines = []
    async with redis_client.aget_client() as client:
        for entity in SEED:
            main_len = await client.xlen(BROKER_CONFIG.main_key(SCOPE, entity))
            dead_len = await client.xlen(BROKER_CONFIG.dead_letter_key(SCOPE, entity))
            lines.append(f"{entity.path}: main={main_len} dead-letter={dead_len}")
    console.print(Panel("\n".join(lines), title="Stream lengths after sweep"))


async def main() -> None:
    configure_logging(LoggingConfig(level="WARNING"))
    redis_config = RedisConfig(connection=RedisConnectionSettings(host="localhost", port=6379))

    async with RedisClient(redis_config) as redis_client:
        await seed(redis_client)
        await dry_run(redis_client)
        await sweep(redis_client)
        await inspect(redis_client)


if __name__ == "__main__":
    asyncio.run(main())
