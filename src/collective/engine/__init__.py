"""Coordination engine: the Coordinator facade, state documents and task execution."""

from collective.engine.coordinator import Coordinator, ExperienceOutcome, MaintenanceReport
from collective.engine.executor import ExecutionResult, OutcomeReport, TaskExecutor
from collective.engine.state import SCHEMA_VERSION, ImportResult, StateDocument

__all__ = [
    "SCHEMA_VERSION",
    "Coordinator",
    "ExecutionResult",
    "ExperienceOutcome",
    "ImportResult",
    "MaintenanceReport",
    "OutcomeReport",
    "StateDocument",
    "TaskExecutor",
]
