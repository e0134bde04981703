from .scheduler import (
    execute_task,
    run_reconciliation,
    run_backfill_task,
    list_recent_runs,
    run_stress_analysis,
    register_processor,
    unregister_processor,
    clear_processors,
    TaskResult,
    PostProcessor,
    TASK_TYPES,
)
from .reconciler import (
    ReconciliationOrchestrator,
    SourceAdapters,
    SourceReport,
    RunReport,
    trigger_reconciliation,
)
from .backfill import run_backfill, auto_backfill_spot, BackfillReport
from .run_tracker import FetchRunTracker, RunStatus, track_fetch_run


__all__ = [
    "execute_task",
    "run_reconciliation",
    "run_backfill_task",
    "list_recent_runs",
    "run_stress_analysis",
    "register_processor",
    "unregister_processor",
    "clear_processors",
    "TaskResult",
    "PostProcessor",
    "TASK_TYPES",
    "ReconciliationOrchestrator",
    "SourceAdapters",
    "SourceReport",
    "RunReport",
    "trigger_reconciliation",
    "FetchRunTracker",
    "RunStatus",
    "track_fetch_run",
    "run_backfill",
    "auto_backfill_spot",
    "BackfillReport",
]
