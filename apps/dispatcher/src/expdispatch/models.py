from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from sqlalchemy import CheckConstraint, Column, Integer, MetaData, SmallInteger, String, Table

TIMEOUT_RETURN_CODE = 124
MAX_COMMAND_LENGTH = 500


class JobStatus(IntEnum):
    NOT_RUNNING = 0
    RUNNING = 1
    SUCCESS_FINISHED = 2
    FAILED_FINISHED = 3
    TIMED_OUT = 4

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCESS_FINISHED, JobStatus.FAILED_FINISHED, JobStatus.TIMED_OUT)


_STATUS_LABELS = {
    JobStatus.NOT_RUNNING: "Available",
    JobStatus.RUNNING: "Running",
    JobStatus.SUCCESS_FINISHED: "Success",
    JobStatus.FAILED_FINISHED: "Failure",
    JobStatus.TIMED_OUT: "Timeout",
}


@dataclass(frozen=True)
class Job:
    id: int
    command: str


@dataclass(frozen=True)
class ProcessResult:
    job_id: int
    code: int
    stdout: str
    stderr: str
    status: JobStatus


def build_jobs_table(metadata: MetaData, name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("command", String(MAX_COMMAND_LENGTH), nullable=False),
        Column("status", SmallInteger, nullable=False),
        CheckConstraint(
            f"status >= {int(min(JobStatus))} AND status <= {int(max(JobStatus))}",
            name=f"ck_{name}_status",
        ),
    )
