"""Session orchestration core: monitor, scheduler, batches and the facade."""

from .batch import BatchConfigError, BatchOutcome, BatchReport, BatchRunner
from .markers import OutputCollector, parse_output
from .monitor import ExecutionMonitor
from .orchestrator import (
    OperationResult,
    OrchestrationComponent,
    OrchestrationResult,
    SessionOrchestrator,
    StartResult,
    StopAllReport,
    SyncReport,
)
from .scheduler import DependencyScheduler
from .store import InvalidTransitionError, SessionNotFoundError, SessionStore

__all__ = [
    "BatchConfigError",
    "BatchOutcome",
    "BatchReport",
    "BatchRunner",
    "DependencyScheduler",
    "ExecutionMonitor",
    "InvalidTransitionError",
    "OperationResult",
    "OrchestrationComponent",
    "OrchestrationResult",
    "OutputCollector",
    "SessionNotFoundError",
    "SessionOrchestrator",
    "SessionStore",
    "StartResult",
    "StopAllReport",
    "SyncReport",
    "parse_output",
]
