"""Background run worker with restart recovery."""

from dataclasses import dataclass
import logging
import queue
import threading
from typing import Any, List, Optional

from shipgate.data_models import Run
from shipgate.errors import ShipgateError
from shipgate.pipeline.schema import PipelineDefinition

logger = logging.getLogger(__name__)


@dataclass
class RunJob:
    """A run waiting for the worker. ``definition`` is None for resumed runs."""
    run_id: str
    run: Optional[Run] = None
    definition: Optional[PipelineDefinition] = None


class RunWorker:
    """Execute queued runs on background threads.

    Runs of the same pipeline still execute one at a time (the engine
    serialises them); ``workers`` bounds how many pipelines progress at once.
    """

    def __init__(self, run_service: Any, workers: int = 2):
        self.run_service = run_service
        self.workers = workers
        self._queue: "queue.Queue[RunJob]" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self._app = None

    def start(self, app=None) -> None:
        if self._threads:
            return
        self._app = app
        self._stop_event.clear()
        for index in range(self.workers):
            thread = threading.Thread(target=self._run, name=f"shipgate-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"RunWorker started with {self.workers} thread(s)")
        self.requeue_pending()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def enqueue_run(self, run: Run, definition: PipelineDefinition) -> None:
        self._queue.put(RunJob(run_id=run.run_id, run=run, definition=definition))
        logger.info(f"Queued run {run.run_id}")

    def enqueue_resume(self, run_id: str) -> None:
        self._queue.put(RunJob(run_id=run_id))

    def requeue_pending(self) -> int:
        """Resume runs left incomplete or queued when the server stopped."""
        recorder = self.run_service.recorder
        run_ids = recorder.incomplete_runs() + recorder.queued_runs()
        for run_id in run_ids:
            self.enqueue_resume(run_id)
        if run_ids:
            logger.info(f"Requeued {len(run_ids)} unfinished run(s): {', '.join(run_ids)}")
        return len(run_ids)

    def join(self) -> None:
        """Block until every queued job has been processed."""
        self._queue.join()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue

            try:
                if self._app is not None:
                    with self._app.app_context():
                        self._process(job)
                else:
                    self._process(job)
            except ShipgateError as exc:
                logger.error(f"Run {job.run_id} could not be executed: {exc.message}")
            except Exception:
                logger.exception(f"Run {job.run_id} crashed the worker job")
            finally:
                self._queue.task_done()

    def _process(self, job: RunJob) -> None:
        if job.run is not None and job.definition is not None:
            run = self.run_service.execute(job.run, job.definition)
        else:
            run = self.run_service.resume(job.run_id)
        logger.info(f"Run {run.run_id} finished: {run.status.value}")
