"""Services for orchestrating runs and background execution."""

from shipgate.services.run_service import RunService
from shipgate.services.run_worker import RunJob, RunWorker

__all__ = [
    "RunService",
    "RunJob",
    "RunWorker",
]
