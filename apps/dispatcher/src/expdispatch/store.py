from __future__ import annotations

from collections.abc import Iterable, Sequence
from pathlib import Path
import random
import re

from sqlalchemy import MetaData, func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from expdispatch.models import MAX_COMMAND_LENGTH, Job, JobStatus, build_jobs_table

_TABLE_NAME_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]{0,63}")
_INSERT_BATCH_SIZE = 1000


class JobStore:
    """Shared work table: one row per command plus its lifecycle status.

    ``claim_available`` is the only coordination point between dispatcher
    instances. Selecting rows and marking them running happens while the
    table (or, for SQLite, the database) is write-locked, so a row can never
    be handed out twice.
    """

    def __init__(self, engine: Engine, table_name: str = "experiments") -> None:
        if not _TABLE_NAME_PATTERN.fullmatch(table_name):
            raise ValueError(f"invalid table name: {table_name!r}")
        self._engine = engine
        self._metadata = MetaData()
        self._table = build_jobs_table(self._metadata, table_name)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def table_name(self) -> str:
        return self._table.name

    def create_table(self) -> None:
        # Replaces any existing table, rows included.
        self._table.drop(self._engine, checkfirst=True)
        self._table.create(self._engine)

    def load_commands(self, lines: Iterable[str], shuffle: bool = False) -> int:
        commands = [line.rstrip() for line in lines]
        commands = [command for command in commands if command.strip()]

        for command in commands:
            if len(command) > MAX_COMMAND_LENGTH:
                raise ValueError(
                    f"command exceeds {MAX_COMMAND_LENGTH} characters: {command[:60]!r}..."
                )

        if shuffle:
            random.shuffle(commands)

        for start in range(0, len(commands), _INSERT_BATCH_SIZE):
            batch = commands[start : start + _INSERT_BATCH_SIZE]
            with self._engine.begin() as connection:
                connection.execute(
                    insert(self._table),
                    [{"command": command, "status": int(JobStatus.NOT_RUNNING)} for command in batch],
                )
        return len(commands)

    def load_commands_file(self, path: Path, shuffle: bool = False) -> int:
        contents = Path(path).read_text(encoding="utf-8")
        return self.load_commands(contents.splitlines(), shuffle=shuffle)

    def claim_available(self, n: int, shuffle: bool = False) -> list[Job]:
        if n <= 0:
            return []

        dialect = self._engine.dialect.name
        if dialect in {"mysql", "mariadb"}:
            return self._claim_with_lock_tables(n, shuffle)
        if dialect == "postgresql":
            return self._claim_with_postgres_lock(n, shuffle)
        if dialect == "sqlite":
            return self._claim_with_immediate_transaction(n, shuffle)
        return self._claim_with_conditional_update(n, shuffle)

    def set_status(self, ids: Sequence[int], status: JobStatus) -> int:
        ids = list(ids)
        if not ids:
            return 0
        with self._engine.begin() as connection:
            return self._update_status(connection, ids, status)

    def reset_all(self) -> int:
        with self._engine.connect() as connection:
            ids = list(connection.scalars(select(self._table.c.id)).all())
        return self.set_status(ids, JobStatus.NOT_RUNNING)

    def reset_where(self, status: JobStatus) -> int:
        with self._engine.connect() as connection:
            ids = list(
                connection.scalars(
                    select(self._table.c.id).where(self._table.c.status == int(status))
                ).all()
            )
        return self.set_status(ids, JobStatus.NOT_RUNNING)

    def count_available(self) -> int:
        with self._engine.connect() as connection:
            return int(
                connection.execute(
                    select(func.count())
                    .select_from(self._table)
                    .where(self._table.c.status == int(JobStatus.NOT_RUNNING))
                ).scalar_one()
            )

    def all_rows(self) -> list[tuple[str, JobStatus]]:
        with self._engine.connect() as connection:
            rows = connection.execute(
                select(self._table.c.command, self._table.c.status).order_by(self._table.c.id.asc())
            ).all()
        return [(row.command, JobStatus(row.status)) for row in rows]

    def status_histogram(self) -> dict[JobStatus, int]:
        histogram = {status: 0 for status in JobStatus}
        with self._engine.connect() as connection:
            rows = connection.execute(
                select(self._table.c.status, func.count()).group_by(self._table.c.status)
            ).all()
        for status_code, count in rows:
            histogram[JobStatus(status_code)] = int(count)
        return histogram

    def _quoted_table_name(self) -> str:
        return self._engine.dialect.identifier_preparer.format_table(self._table)

    def _select_available(self, connection: Connection, n: int, shuffle: bool) -> list[Job]:
        order_by = func.random() if shuffle else self._table.c.id.asc()
        rows = connection.execute(
            select(self._table.c.id, self._table.c.command)
            .where(self._table.c.status == int(JobStatus.NOT_RUNNING))
            .order_by(order_by)
            .limit(n)
        ).all()
        return [Job(id=int(row.id), command=row.command) for row in rows]

    def _update_status(self, connection: Connection, ids: Sequence[int], status: JobStatus) -> int:
        result = connection.execute(
            update(self._table).where(self._table.c.id.in_(list(ids))).values(status=int(status))
        )
        return result.rowcount

    def _claim_selected(self, connection: Connection, n: int, shuffle: bool) -> list[Job]:
        jobs = self._select_available(connection, n, shuffle)
        if jobs:
            self._update_status(connection, [job.id for job in jobs], JobStatus.RUNNING)
        return jobs

    def _claim_with_lock_tables(self, n: int, shuffle: bool) -> list[Job]:
        with self._engine.connect() as connection:
            connection.exec_driver_sql(f"LOCK TABLES {self._quoted_table_name()} WRITE")
            try:
                jobs = self._claim_selected(connection, n, shuffle)
                connection.commit()
            finally:
                connection.exec_driver_sql("UNLOCK TABLES")
                connection.commit()
        return jobs

    def _claim_with_postgres_lock(self, n: int, shuffle: bool) -> list[Job]:
        with self._engine.begin() as connection:
            connection.exec_driver_sql(f"LOCK TABLE {self._quoted_table_name()} IN EXCLUSIVE MODE")
            return self._claim_selected(connection, n, shuffle)

    def _claim_with_immediate_transaction(self, n: int, shuffle: bool) -> list[Job]:
        with self._engine.connect() as connection:
            # Takes the database write lock up front; released on commit/rollback.
            connection.exec_driver_sql("BEGIN IMMEDIATE")
            jobs = self._claim_selected(connection, n, shuffle)
            connection.commit()
        return jobs

    def _claim_with_conditional_update(self, n: int, shuffle: bool) -> list[Job]:
        claimed: list[Job] = []
        with self._engine.begin() as connection:
            for job in self._select_available(connection, n, shuffle):
                result = connection.execute(
                    update(self._table)
                    .where(self._table.c.id == job.id)
                    .where(self._table.c.status == int(JobStatus.NOT_RUNNING))
                    .values(status=int(JobStatus.RUNNING))
                )
                if result.rowcount == 1:
                    claimed.append(job)
        return claimed
