from __future__ import annotations

from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, wait
from pathlib import Path
from queue import Queue
import sys
from threading import Condition, Thread

from expdispatch.errors import CollectorError
from expdispatch.models import Job, ProcessResult


class ResultCollector:
    """Background sink for finished jobs.

    Results are handled one at a time in arrival order: captured output is
    written to ``<log_folder>/<job id>.out`` and ``.err`` when a folder is
    configured, and echoed to the console otherwise. The job then leaves the
    active registry and its task handle is joined. ``wait_all_to_finish``
    blocks until the registry is empty.

    A job id can be registered more than once (a row reset and claimed again
    while its first run is still in flight); each result then accounts for
    one finished run of that id.
    """

    def __init__(self, log_folder: Path | str | None = None, *, max_pending: int = 100) -> None:
        self._log_folder = Path(log_folder) if log_folder is not None else None
        # ``None`` tells the background thread to stop.
        self._results: Queue[ProcessResult | None] = Queue(maxsize=max_pending)
        self._condition = Condition()
        self._active: dict[int, list[Future[None]]] = {}
        self._collected_early: Counter[int] = Counter()
        self._task_failure: BaseException | None = None
        self._collector_failure: Exception | None = None
        self._thread: Thread | None = None

    @property
    def log_folder(self) -> Path | None:
        return self._log_folder

    @property
    def active_job_ids(self) -> list[int]:
        with self._condition:
            return sorted(self._active)

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("result collector already started")
        if self._log_folder is not None:
            self._log_folder.mkdir(parents=True, exist_ok=True)
        self._thread = Thread(target=self._collect, name="result-collector", daemon=True)
        self._thread.start()

    def submit(self, result: ProcessResult) -> None:
        self._results.put(result)

    def add_active_job(self, job: Job, handle: Future[None]) -> None:
        with self._condition:
            already_collected = self._collected_early[job.id] > 0
            if already_collected:
                self._collected_early[job.id] -= 1
                if not self._collected_early[job.id]:
                    del self._collected_early[job.id]
            else:
                handles = self._active.setdefault(job.id, [])
                if handles:
                    print(
                        f"[collector] job is already active job_id={job.id} runs={len(handles) + 1}",
                        file=sys.stderr,
                        flush=True,
                    )
                handles.append(handle)
        handle.add_done_callback(self._record_task_failure)
        if already_collected:
            handle.result()

    def raise_if_failed(self) -> None:
        with self._condition:
            collector_failure = self._collector_failure
            task_failure = self._task_failure
        if collector_failure is not None:
            raise CollectorError(f"result collector failed: {collector_failure}") from collector_failure
        if task_failure is not None:
            raise task_failure

    def wait_all_to_finish(self) -> None:
        with self._condition:
            handles = [handle for job_handles in self._active.values() for handle in job_handles]
        for handle in handles:
            handle.result()

        with self._condition:
            while self._active:
                if self._thread is None or not self._thread.is_alive():
                    raise CollectorError(
                        f"result collector stopped with {len(self._active)} job(s) still active"
                    )
                self._condition.wait(timeout=1.0)
        self.raise_if_failed()

    def close(self) -> None:
        if self._thread is None:
            return
        self._results.put(None)
        self._thread.join()
        self._thread = None
        self.raise_if_failed()

    def _record_task_failure(self, handle: Future[None]) -> None:
        if handle.cancelled():
            return
        exc = handle.exception()
        if exc is None:
            return
        with self._condition:
            if self._task_failure is None:
                self._task_failure = exc
            self._condition.notify_all()

    def _collect(self) -> None:
        while True:
            result = self._results.get()
            if result is None:
                return
            self._handle(result)

    def _handle(self, result: ProcessResult) -> None:
        if self._log_folder is None:
            _echo(result)
        elif self._collector_failure is None:
            try:
                _write_logs(self._log_folder, result)
            except OSError as exc:
                print(
                    f"[collector] writing logs failed job_id={result.job_id} error={exc!r}",
                    file=sys.stderr,
                    flush=True,
                )
                with self._condition:
                    self._collector_failure = exc

        with self._condition:
            handles = self._active.get(result.job_id)
            if not handles:
                self._collected_early[result.job_id] += 1
                return
            candidates = list(handles)

        # The task exits right after handing over its result; failures are
        # recorded by the done callback.
        done, _ = wait(candidates, return_when=FIRST_COMPLETED)
        finished = next(handle for handle in candidates if handle in done)
        with self._condition:
            handles = self._active[result.job_id]
            handles.remove(finished)
            if not handles:
                del self._active[result.job_id]
            self._condition.notify_all()


def _echo(result: ProcessResult) -> None:
    print(result.stdout, end="", flush=True)
    print(result.stderr, end="", file=sys.stderr, flush=True)


def _write_logs(folder: Path, result: ProcessResult) -> None:
    (folder / f"{result.job_id}.out").write_text(result.stdout, encoding="utf-8")
    (folder / f"{result.job_id}.err").write_text(result.stderr, encoding="utf-8")
