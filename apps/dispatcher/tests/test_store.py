from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from expdispatch.models import MAX_COMMAND_LENGTH, JobStatus
from expdispatch.store import JobStore


def test_rejects_table_names_that_are_not_identifiers(engine) -> None:
    with pytest.raises(ValueError, match="invalid table name"):
        JobStore(engine, "jobs; DROP TABLE jobs")


def test_create_table_replaces_existing_rows(store: JobStore) -> None:
    store.load_commands(["echo a", "echo b"])
    store.create_table()

    assert store.all_rows() == []


def test_status_column_rejects_unknown_codes(store: JobStore) -> None:
    with pytest.raises(IntegrityError):
        with store.engine.begin() as connection:
            connection.execute(text("INSERT INTO experiments (command, status) VALUES ('echo', 7)"))


def test_load_commands_skips_blank_lines_and_trims_line_endings(store: JobStore) -> None:
    loaded = store.load_commands(["echo a\n", "", "   ", "false  "])

    assert loaded == 2
    assert store.all_rows() == [
        ("echo a", JobStatus.NOT_RUNNING),
        ("false", JobStatus.NOT_RUNNING),
    ]


def test_load_commands_file_reads_one_command_per_line(store: JobStore, tmp_path: Path) -> None:
    commands_file = tmp_path / "commands.txt"
    commands_file.write_text("echo a\necho b\n\necho c\n", encoding="utf-8")

    assert store.load_commands_file(commands_file) == 3
    assert [command for command, _ in store.all_rows()] == ["echo a", "echo b", "echo c"]


def test_load_commands_rejects_overlong_commands_before_inserting(store: JobStore) -> None:
    with pytest.raises(ValueError, match="exceeds"):
        store.load_commands(["echo ok", "x" * (MAX_COMMAND_LENGTH + 1)])

    assert store.all_rows() == []


def test_shuffled_load_is_a_permutation(store: JobStore) -> None:
    commands = [f"echo {i}" for i in range(50)]

    store.load_commands(commands, shuffle=True)

    assert sorted(command for command, _ in store.all_rows()) == sorted(commands)


def test_claim_returns_only_available_rows_and_marks_them_running(store: JobStore) -> None:
    store.load_commands(["echo a", "echo b"])

    jobs = store.claim_available(5)

    assert [job.command for job in jobs] == ["echo a", "echo b"]
    assert store.count_available() == 0
    assert store.status_histogram()[JobStatus.RUNNING] == 2


def test_claim_follows_insertion_order_without_shuffle(store: JobStore) -> None:
    store.load_commands([f"echo {i}" for i in range(5)])

    first = store.claim_available(2)
    second = store.claim_available(2)

    assert [job.command for job in first] == ["echo 0", "echo 1"]
    assert [job.command for job in second] == ["echo 2", "echo 3"]


def test_claim_with_non_positive_count_returns_nothing(store: JobStore) -> None:
    store.load_commands(["echo a"])

    assert store.claim_available(0) == []
    assert store.count_available() == 1


def test_shuffled_claim_returns_the_same_jobs(store: JobStore) -> None:
    store.load_commands([f"echo {i}" for i in range(10)])

    jobs = store.claim_available(10, shuffle=True)

    assert sorted(job.command for job in jobs) == sorted(f"echo {i}" for i in range(10))


def test_concurrent_claims_never_return_the_same_job(store: JobStore) -> None:
    store.load_commands([f"echo {i}" for i in range(60)])

    def claim_until_empty() -> list[int]:
        claimed: list[int] = []
        while True:
            jobs = store.claim_available(3, shuffle=True)
            if not jobs:
                return claimed
            claimed.extend(job.id for job in jobs)

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = [future.result() for future in [executor.submit(claim_until_empty) for _ in range(4)]]

    all_ids = [job_id for claimed in results for job_id in claimed]
    assert len(all_ids) == 60
    assert len(set(all_ids)) == 60
    assert store.status_histogram()[JobStatus.RUNNING] == 60


def test_set_status_with_no_ids_is_a_noop(store: JobStore) -> None:
    assert store.set_status([], JobStatus.FAILED_FINISHED) == 0


def test_reset_where_running_leaves_other_rows_untouched(store: JobStore) -> None:
    store.load_commands(["echo a", "echo b", "false"])
    jobs = store.claim_available(3)
    store.set_status([jobs[2].id], JobStatus.FAILED_FINISHED)

    reset = store.reset_where(JobStatus.RUNNING)

    assert reset == 2
    assert store.all_rows() == [
        ("echo a", JobStatus.NOT_RUNNING),
        ("echo b", JobStatus.NOT_RUNNING),
        ("false", JobStatus.FAILED_FINISHED),
    ]


def test_reset_all_makes_every_job_available_again(store: JobStore) -> None:
    store.load_commands(["echo a", "echo b", "echo c"])
    jobs = store.claim_available(3)
    store.set_status([jobs[0].id], JobStatus.SUCCESS_FINISHED)
    store.set_status([jobs[1].id], JobStatus.TIMED_OUT)

    assert store.reset_all() == 3
    assert store.count_available() == 3


def test_histogram_counts_sum_to_row_count(store: JobStore) -> None:
    store.load_commands([f"echo {i}" for i in range(7)])
    jobs = store.claim_available(4)
    store.set_status([jobs[0].id], JobStatus.SUCCESS_FINISHED)
    store.set_status([jobs[1].id, jobs[2].id], JobStatus.FAILED_FINISHED)

    histogram = store.status_histogram()

    assert set(histogram) == set(JobStatus)
    assert sum(histogram.values()) == 7
    assert histogram == {
        JobStatus.NOT_RUNNING: 3,
        JobStatus.RUNNING: 1,
        JobStatus.SUCCESS_FINISHED: 1,
        JobStatus.FAILED_FINISHED: 2,
        JobStatus.TIMED_OUT: 0,
    }


def test_tables_with_different_names_are_independent(engine) -> None:
    first = JobStore(engine, "first_experiments")
    second = JobStore(engine, "second_experiments")
    first.create_table()
    second.create_table()

    first.load_commands(["echo a"])

    assert first.count_available() == 1
    assert second.count_available() == 0
