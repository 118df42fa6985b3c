from expdispatch.collector import ResultCollector
from expdispatch.dispatch import DispatchSummary, Dispatcher, run_dispatch_loop
from expdispatch.governor import ConcurrencyGovernor
from expdispatch.models import Job, JobStatus, ProcessResult
from expdispatch.runner import run_job
from expdispatch.store import JobStore

__all__ = [
    "ConcurrencyGovernor",
    "DispatchSummary",
    "Dispatcher",
    "Job",
    "JobStatus",
    "JobStore",
    "ProcessResult",
    "ResultCollector",
    "run_dispatch_loop",
    "run_job",
]
