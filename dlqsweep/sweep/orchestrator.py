from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from structlog.contextvars import bound_contextvars

from ..core.errors import BrokerError, EntityNotFound
from ..logger import get_logger
from .config import SweepConfig
from .domain import DrainOutcome, ErrorRecord, RunReport, utcnow
from .drainer import DeadLetterDrainer
from .locator import EntityLocator
from .policy import discard_all
from .simulator import DryRunBroker

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from ..broker.protocols import DeadLetterBroker, EntityCatalog
    from .config import EntityTarget
    from .domain import Entity, ResourceScope
    from .policy import DispositionPolicy
    from .simulator import SimulatedAction

logger: BoundLogger = get_logger(__name__)


class SweepOrchestrator:
    """Run one sweep: locate entities, drain the non-empty ones, aggregate a report.

    Each qualifying entity gets its own task; an ``asyncio.Semaphore`` keeps at
    most ``concurrency_limit`` of them draining. A failure inside one entity,
    expected or not, ends up in that entity's outcome and never stops its
    siblings. Lookup failures are recorded at run level.
    """

    def __init__(
        self,
        broker: DeadLetterBroker,
        catalog: EntityCatalog,
        scope: ResourceScope,
        config: SweepConfig | None = None,
        policy: DispositionPolicy = discard_all,
    ) -> None:
        self._broker = broker
        self._catalog = catalog
        self._scope = scope
        self._config = config or SweepConfig()
        self._policy = policy
        self._locator = EntityLocator(catalog, scope, self._config.drain.retry)
        self._simulator: DryRunBroker | None = None

    @property
    def config(self) -> SweepConfig:
        return self._config

    @property
    def simulated_actions(self) -> tuple[SimulatedAction, ...]:
        """Broker calls the last dry run recorded instead of executing."""
        return self._simulator.journal if self._simulator else ()

    async def run(self, target: EntityTarget | None = None, *, cancel: asyncio.Event | None = None) -> RunReport:
        started_at = utcnow()
        run_errors: list[ErrorRecord] = []
        outcomes: list[DrainOutcome] = []
        outcomes_lock = asyncio.Lock()

        logger.info(
            "Starting sweep",
            namespace=self._scope.namespace,
            resource_group=self._scope.resource_group,
            dry_run=self._config.dry_run,
            concurrency_limit=self._config.concurrency_limit,
            max_messages_per_entity=self._config.max_messages_per_entity,
        )

        try:
            entities = await self._locator.locate(target)
        except (EntityNotFound, BrokerError) as exc:
            logger.error("Entity lookup failed", error_kind=exc.kind, error=exc.detail)
            run_errors.append(ErrorRecord.from_exception(exc))
            entities = []
        except Exception as exc:
            logger.exception("Unexpected failure while locating entities")
            run_errors.append(ErrorRecord.from_exception(exc))
            entities = []

        qualifying = [entity for entity in entities if entity.dead_letter_depth > 0]
        if len(qualifying) < len(entities):
            logger.info("Skipping entities without dead letters", count=len(entities) - len(qualifying))

        broker: DeadLetterBroker = self._broker
        self._simulator = None
        if self._config.dry_run:
            self._simulator = DryRunBroker(self._broker)
            broker = self._simulator
        drainer = DeadLetterDrainer(broker, self._policy, self._config.drain)
        semaphore = asyncio.Semaphore(self._config.concurrency_limit)

        async def drain_entity(entity: Entity) -> None:
            async with semaphore:
                if cancel is not None and cancel.is_set():
                    logger.info("Run cancelled, entity not drained", entity=entity.path)
                    return
                with bound_contextvars(entity=entity.path):
                    outcome = await self._drain_isolated(drainer, entity, cancel)
            async with outcomes_lock:
                outcomes.append(outcome)

        async with asyncio.TaskGroup() as task_group:
            for entity in qualifying:
                task_group.create_task(drain_entity(entity), name=f"drain:{entity.path}")

        report = RunReport(
            dry_run=self._config.dry_run,
            started_at=started_at,
            finished_at=utcnow(),
            max_messages_per_entity=self._config.max_messages_per_entity,
            concurrency_limit=self._config.concurrency_limit,
            entities_located=len(entities),
            outcomes=tuple(outcomes),
            errors=tuple(run_errors),
            # Only work actually cut short counts; a signal after the last drain does not
            cancelled=len(outcomes) < len(qualifying) or any(outcome.cancelled for outcome in outcomes),
        )
        logger.info(
            "Sweep finished",
            status=report.status,
            entities_drained=report.totals.entities_drained,
            inspected=report.totals.messages_inspected,
            removed=report.totals.messages_removed,
            redriven=report.totals.messages_redriven,
            skipped=report.totals.messages_skipped,
            errors=report.totals.errors,
        )
        return report

    async def _drain_isolated(
        self,
        drainer: DeadLetterDrainer,
        entity: Entity,
        cancel: asyncio.Event | None,
    ) -> DrainOutcome:
        try:
            return await drainer.drain(entity, cancel=cancel)
        except Exception as exc:
            logger.exception("Unexpected failure while draining")
            return DrainOutcome(
                entity=entity,
                errors=(ErrorRecord.from_exception(exc, entity_path=entity.path),),
                fatal=True,
            )
