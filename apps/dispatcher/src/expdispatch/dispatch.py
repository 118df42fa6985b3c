from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from pathlib import Path
import sys
from threading import Event

from expdispatch.collector import ResultCollector
from expdispatch.governor import ConcurrencyGovernor
from expdispatch.runner import execute_and_report
from expdispatch.store import JobStore


@dataclass(frozen=True)
class DispatchSummary:
    launched: int
    cycles: int


class Dispatcher:
    def __init__(
        self,
        store: JobStore,
        *,
        poll_interval: float,
        concurrency_limit: int,
        keep_running: bool = False,
        shuffle: bool = False,
        log_folder: Path | str | None = None,
        governor: ConcurrencyGovernor | None = None,
        stop_event: Event | None = None,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        if poll_interval < 0:
            raise ValueError("poll_interval must not be negative")

        self._store = store
        self._poll_interval = poll_interval
        self._concurrency_limit = concurrency_limit
        self._keep_running = keep_running
        self._shuffle = shuffle
        self._governor = governor or ConcurrencyGovernor()
        self._stop_event = stop_event or Event()
        self._collector = ResultCollector(log_folder)

    @property
    def governor(self) -> ConcurrencyGovernor:
        return self._governor

    @property
    def collector(self) -> ResultCollector:
        return self._collector

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> DispatchSummary:
        launched = 0
        cycles = 0
        self._collector.start()

        with ThreadPoolExecutor(
            max_workers=self._concurrency_limit,
            thread_name_prefix="job",
        ) as executor:
            while self._should_poll():
                cycles += 1
                launched += self._launch_available(executor)
                self._collector.raise_if_failed()
                self._stop_event.wait(self._poll_interval)

            print(
                f"[dispatcher] no more work; waiting for {len(self._collector.active_job_ids)} active job(s)",
                file=sys.stderr,
                flush=True,
            )
            self._collector.wait_all_to_finish()

        self._collector.close()
        print(f"[dispatcher] drained launched={launched} cycles={cycles}", file=sys.stderr, flush=True)
        return DispatchSummary(launched=launched, cycles=cycles)

    def _should_poll(self) -> bool:
        if self._stop_event.is_set():
            return False
        available = self._store.count_available()
        return available > 0 or self._keep_running

    def _launch_available(self, executor: ThreadPoolExecutor) -> int:
        capacity = self._governor.free_capacity(self._concurrency_limit)
        if capacity <= 0:
            return 0

        jobs = self._store.claim_available(capacity, shuffle=self._shuffle)
        for job in jobs:
            handle = executor.submit(
                partial(
                    execute_and_report,
                    job,
                    self._store,
                    self._governor,
                    self._collector.submit,
                )
            )
            self._collector.add_active_job(job, handle)

        if jobs:
            print(
                f"[dispatcher] claimed jobs={[job.id for job in jobs]} capacity={capacity}",
                file=sys.stderr,
                flush=True,
            )
        return len(jobs)


def run_dispatch_loop(
    store: JobStore,
    *,
    poll_interval: float,
    concurrency_limit: int,
    keep_running: bool = False,
    shuffle: bool = False,
    log_folder: Path | str | None = None,
    governor: ConcurrencyGovernor | None = None,
    stop_event: Event | None = None,
) -> DispatchSummary:
    dispatcher = Dispatcher(
        store,
        poll_interval=poll_interval,
        concurrency_limit=concurrency_limit,
        keep_running=keep_running,
        shuffle=shuffle,
        log_folder=log_folder,
        governor=governor,
        stop_event=stop_event,
    )
    return dispatcher.run()
