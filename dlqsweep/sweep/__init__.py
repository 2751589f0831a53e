from .config import DrainConfig, EntityTarget, SweepConfig, broker_retry_config
from .domain import (
    DeadLetterMessage,
    DrainOutcome,
    Entity,
    ErrorRecord,
    ResourceScope,
    RunReport,
    RunTotals,
)
from .drainer import DeadLetterDrainer
from .locator import EntityLocator
from .orchestrator import SweepOrchestrator
from .policy import POLICY_NAMES, ClassifyingPolicy, DispositionPolicy, build_policy, discard_all
from .report import render_report
from .simulator import DryRunBroker, SimulatedAction

__all__ = [
    "POLICY_NAMES",
    "ClassifyingPolicy",
    "DeadLetterDrainer",
    "DeadLetterMessage",
    "DispositionPolicy",
    "DrainConfig",
    "DrainOutcome",
    "DryRunBroker",
    "Entity",
    "EntityLocator",
    "EntityTarget",
    "ErrorRecord",
    "ResourceScope",
    "RunReport",
    "RunTotals",
    "SimulatedAction",
    "SweepConfig",
    "SweepOrchestrator",
    "broker_retry_config",
    "build_policy",
    "discard_all",
    "render_report",
]
