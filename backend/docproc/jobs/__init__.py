from docproc.jobs.orchestrator import Orchestrator, TickResult
from docproc.jobs.store import ClaimedJob, JobStore, PendingBatch, StatusEvent

__all__ = ["Orchestrator", "TickResult", "ClaimedJob", "JobStore", "PendingBatch", "StatusEvent"]
