from __future__ import annotations

from collections.abc import Callable
from contextlib import ExitStack
import subprocess
import sys
import tempfile
from typing import IO

from expdispatch.errors import InvalidCommandError
from expdispatch.governor import ConcurrencyGovernor
from expdispatch.models import TIMEOUT_RETURN_CODE, Job, JobStatus, ProcessResult
from expdispatch.store import JobStore

START_FAILURE_CODE = -1


def classify_exit_code(code: int) -> JobStatus:
    if code == 0:
        return JobStatus.SUCCESS_FINISHED
    if code == TIMEOUT_RETURN_CODE:
        return JobStatus.TIMED_OUT
    return JobStatus.FAILED_FINISHED


def _read_captured(stream: IO[bytes]) -> str:
    stream.seek(0)
    return stream.read().decode("utf-8", errors="replace")


def _start_failure(job: Job, store: JobStore, exc: Exception) -> ProcessResult:
    store.set_status([job.id], JobStatus.FAILED_FINISHED)
    print(f"[runner] job failed to start job_id={job.id} error={exc}", file=sys.stderr, flush=True)
    return ProcessResult(
        job_id=job.id,
        code=START_FAILURE_CODE,
        stdout="",
        stderr=str(exc),
        status=JobStatus.FAILED_FINISHED,
    )


def run_job(job: Job, store: JobStore, governor: ConcurrencyGovernor) -> ProcessResult:
    """Run one job's command through the shell and record its terminal status.

    The status is written to the store as soon as the child exits, before the
    captured output is read back, so a failure while collecting output cannot
    leave the row marked running. Commands that cannot be started, including
    when the capture files cannot be created, are reported as failed with
    exit code -1 and the reason in ``stderr``.
    """
    if not job.command.strip():
        return _start_failure(
            job,
            store,
            InvalidCommandError("Cannot start subprocess because the command is empty"),
        )

    with ExitStack() as stack:
        try:
            stdout_file = stack.enter_context(tempfile.TemporaryFile())
            stderr_file = stack.enter_context(tempfile.TemporaryFile())
        except OSError as exc:
            return _start_failure(job, store, exc)

        governor.increment()
        try:
            process = subprocess.Popen(
                job.command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=stdout_file,
                stderr=stderr_file,
            )
        except OSError as exc:
            governor.decrement()
            return _start_failure(job, store, exc)

        try:
            code = process.wait()
        finally:
            governor.decrement()

        status = classify_exit_code(code)
        store.set_status([job.id], status)
        print(
            f"[runner] job finished job_id={job.id} status={status.label} exit={code}",
            file=sys.stderr,
            flush=True,
        )

        return ProcessResult(
            job_id=job.id,
            code=code,
            stdout=_read_captured(stdout_file),
            stderr=_read_captured(stderr_file),
            status=status,
        )


def execute_and_report(
    job: Job,
    store: JobStore,
    governor: ConcurrencyGovernor,
    sink: Callable[[ProcessResult], None],
) -> None:
    result = run_job(job, store, governor)
    sink(result)
