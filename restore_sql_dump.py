#!/usr/bin/env python3
"""Resumable SQL dump restore for MySQL."""

from __future__ import annotations

import logging
import sys

from sqlrestore.args import parse_args
from sqlrestore.control import ControlSurface
from sqlrestore.db import DryRunSession, connect_with_retry
from sqlrestore.progress import CommandReader, ProgressPrinter
from sqlrestore.restore import RestoreController
from sqlrestore.types import (
    DatabaseConnectionError,
    ParseError,
    RestoreError,
    RunCancelled,
    RunError,
)

EVENT_BACKLOG = 1024


def setup_logging() -> None:
    # This code here sets up default stdout logging.
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler()],
    )


def add_log_file(log_file: str | None) -> None:
    # This code here adds an optional log file handler.
    if not log_file:
        return
    handler = logging.FileHandler(log_file)
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logging.getLogger().addHandler(handler)


def main(argv: list[str]) -> int:
    # This code here is the CLI entrypoint.
    setup_logging()
    try:
        opts = parse_args(argv)
        add_log_file(opts.log_file)
        logging.info(
            "Mode: %s",
            "DRY RUN (no DB connection)" if opts.dry_run else "LIVE RESTORE",
        )
        logging.info(
            "Settings: file=%s db=%s host=%s port=%s user=%s resume_line=%d",
            opts.dump_file,
            opts.database or "-",
            opts.host,
            opts.port,
            opts.user,
            opts.resume_line,
        )
        logging.info(
            "Settings: max_retries=%d retry_interval=%.1fs boundary=%s trailing=%s",
            opts.max_retries,
            opts.retry_interval,
            opts.boundary,
            opts.trailing_statement,
        )
        policy = opts.retry_policy()
        if opts.dry_run:
            session = DryRunSession()
        else:
            session = connect_with_retry(opts, policy)

        with session:
            control = ControlSurface(max_events=EVENT_BACKLOG)
            controller = RestoreController(
                policy,
                boundary=opts.boundary,
                trailing=opts.trailing_statement,
            )
            worker = controller.start(session, opts.dump_file, opts.resume_line, control)
            printer = ProgressPrinter(
                control,
                bar=opts.progress_bar,
                log_every=opts.progress_statements,
                is_done=lambda: not worker.is_alive(),
            )
            printer.start()
            if sys.stdin is not None and sys.stdin.isatty():
                CommandReader(control).start()
                logging.info("Type p + Enter to pause, r to resume, q to stop")
            try:
                while worker.is_alive():
                    worker.join(0.5)
            except KeyboardInterrupt:
                control.stop()
                worker.join()
            printer.join(5)
            state = worker.wait()
        logging.info(
            "Finished: %d statement(s) through line %d (%.2f%%)",
            state.statement_count,
            state.current_line,
            state.percent,
        )
        return 0
    except ParseError as err:
        logging.error("Configuration error: %s", err)
        return 3
    except DatabaseConnectionError as err:
        logging.error("DB connection failed: %s", err)
        return 1
    except RunCancelled as err:
        logging.warning("%s; rerun with --resume-line %d to continue", err, err.resume_line)
        return 130
    except RunError as err:
        logging.error("Restore failed at line %d: %s\nSQL: %s", err.line, err.cause, err.statement)
        if err.resume_line is not None:
            logging.error("Fix the statement and rerun with --resume-line %d", err.resume_line)
        return 2
    except RestoreError as err:
        logging.error("Restore failed: %s", err)
        return 2
    except Exception as err:
        logging.error("Fatal error: %s", err)
        return 1


def cli() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
