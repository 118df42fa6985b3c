from __future__ import annotations

import argparse
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
import signal
import sys
from threading import Event, current_thread, main_thread

from expdispatch.config import Settings, get_settings, resolve_database_url
from expdispatch.db import create_db_engine
from expdispatch.dispatch import run_dispatch_loop
from expdispatch.models import JobStatus
from expdispatch.store import JobStore

# Histogram names differ from the per-row labels for failed jobs.
_STATS_NAMES = {status: status.label for status in JobStatus} | {JobStatus.FAILED_FINISHED: "Failed"}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="expdispatch",
        description="Run shell commands in parallel from a work table shared by many machines",
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="TOML file with a [client] section (host/user/password)",
    )
    source.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy database URL (defaults to EXPDISPATCH_DATABASE_URL)",
    )
    parser.add_argument("-n", "--table-name", default=None, help="Work table to use")
    parser.add_argument(
        "-s",
        "--shuffle",
        action="store_true",
        help="Shuffle commands when loading and/or claiming",
    )

    subcommands = parser.add_subparsers(dest="command", required=True)

    edit = subcommands.add_parser("edit", help="Create the table, load commands and reset jobs")
    actions = edit.add_mutually_exclusive_group()
    actions.add_argument("-t", "--create-table", action="store_true", help="Create or empty the table")
    actions.add_argument("--reset-running", action="store_true", help="Reset running jobs to available")
    actions.add_argument("--reset-failed", action="store_true", help="Reset failed jobs to available")
    actions.add_argument("--reset-timeout", action="store_true", help="Reset timed out jobs to available")
    actions.add_argument("--reset-all", action="store_true", help="Reset all jobs to available")
    edit.add_argument("-l", "--load", type=Path, default=None, dest="commands_file", help="Commands file to load")

    run = subcommands.add_parser("run", help="Claim and run jobs in parallel")
    run.add_argument("-f", "--freq", type=float, default=None, help="Seconds between polls of the table")
    run.add_argument("-j", "--jobs", type=int, default=None, help="Number of jobs to run in parallel")
    run.add_argument(
        "-k",
        "--keep-running",
        action="store_true",
        help="Keep polling even when no job is available",
    )
    run.add_argument("-l", "--log-folder", type=Path, default=None, help="Write job stdout/stderr here")

    show = subcommands.add_parser("show", help="Print statistics or every job")
    printing = show.add_mutually_exclusive_group()
    printing.add_argument("--stats", action="store_true", help="Print job counts per status")
    printing.add_argument("--all", action="store_true", help="Print every job in the table")

    return parser


def _edit(store: JobStore, args: argparse.Namespace, settings: Settings) -> None:
    if args.create_table:
        store.create_table()
        print(f"[expdispatch] created table {store.table_name}", file=sys.stderr, flush=True)
    else:
        reset_status = {
            "reset_running": JobStatus.RUNNING,
            "reset_failed": JobStatus.FAILED_FINISHED,
            "reset_timeout": JobStatus.TIMED_OUT,
        }
        for flag, status in reset_status.items():
            if getattr(args, flag):
                count = store.reset_where(status)
                print(f"[expdispatch] reset jobs status={status.label} count={count}", file=sys.stderr, flush=True)
        if args.reset_all:
            count = store.reset_all()
            print(f"[expdispatch] reset all jobs count={count}", file=sys.stderr, flush=True)

    if args.commands_file is not None:
        count = store.load_commands_file(args.commands_file, shuffle=args.shuffle)
        print(f"[expdispatch] loaded commands count={count}", file=sys.stderr, flush=True)


@contextmanager
def _stop_on_signals(stop_event: Event) -> Iterator[None]:
    if current_thread() is not main_thread():
        yield
        return

    def _handler(signum: int, _frame: object) -> None:
        print(
            f"[expdispatch] received signal {signum}; finishing active jobs",
            file=sys.stderr,
            flush=True,
        )
        stop_event.set()

    previous = {
        signum: signal.signal(signum, _handler) for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def _run(store: JobStore, args: argparse.Namespace, settings: Settings) -> None:
    stop_event = Event()
    with _stop_on_signals(stop_event):
        run_dispatch_loop(
            store,
            poll_interval=args.freq if args.freq is not None else settings.poll_seconds,
            concurrency_limit=args.jobs if args.jobs is not None else settings.jobs,
            keep_running=args.keep_running,
            shuffle=args.shuffle,
            log_folder=args.log_folder,
            stop_event=stop_event,
        )


def _show(store: JobStore, args: argparse.Namespace, settings: Settings) -> None:
    if args.stats:
        for status, count in store.status_histogram().items():
            print(f"{_STATS_NAMES[status]}: {count}")
    elif args.all:
        rows = store.all_rows()
        if not rows:
            print("Database is empty.")
            return
        print("Command, Status")
        for command, status in rows:
            print(f"{command}, {status.label}")


_COMMANDS = {
    "edit": _edit,
    "run": _run,
    "show": _show,
}


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()

    try:
        url = resolve_database_url(config_file=args.config, database_url=args.database_url)
        engine = create_db_engine(url, echo=settings.db_echo)
        try:
            store = JobStore(engine, args.table_name or settings.table_name)
            _COMMANDS[args.command](store, args, settings)
        finally:
            engine.dispose()
    except Exception as exc:
        print(f"[expdispatch] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
