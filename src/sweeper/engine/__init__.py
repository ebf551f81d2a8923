"""Pipeline engines.

This package provides the two stateful drivers of the pipeline:
- Scan orchestrator: resumable batch-at-a-time scanning and classification
- Action executor: applying, rejecting and undoing cleanup actions
"""

from sweeper.engine.executor import (
    ActionExecutor,
    ActionFailure,
    ExecutionResult,
    UndoResult,
)
from sweeper.engine.scan import BatchProgress, ScanOrchestrator, StartedScan

__all__ = [
    # Scan
    "BatchProgress",
    "ScanOrchestrator",
    "StartedScan",
    # Executor
    "ActionExecutor",
    "ActionFailure",
    "ExecutionResult",
    "UndoResult",
]
