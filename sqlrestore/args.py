from __future__ import annotations

import argparse
import configparser
import logging
import os
from getpass import getpass
from typing import Iterable, Optional

from .parser import BOUNDARY_NAMES, TRAILING_POLICIES
from .types import ParseError, RestoreOptions


def env_override(value: Optional[str], env_key: str) -> Optional[str]:
    # This code here lets env vars fill in what the CLI left out.
    if value:
        return value
    return os.environ.get(env_key)


def build_arg_parser() -> argparse.ArgumentParser:
    # This code here defines the CLI options and defaults.
    parser = argparse.ArgumentParser(
        description="Stream a large SQL dump into MySQL with retry, pause/resume and line resume.",
        epilog="While running, type p (pause), r (resume) or q (stop) and press Enter.",
    )
    parser.add_argument(
        "--config", default=None, help="INI config file with default settings"
    )
    parser.add_argument(
        "--file", "--dump-file", dest="dump_file", required=False, help="SQL file path"
    )
    parser.add_argument("--host", default="localhost", help="MySQL host")
    parser.add_argument("--port", type=int, default=3306, help="MySQL port")
    parser.add_argument("--user", default="root", help="MySQL user")
    parser.add_argument("--password", default="", help="MySQL password (optional)")
    parser.add_argument(
        "--db", "--database", dest="database", default=None, help="Database name (optional)"
    )
    parser.add_argument(
        "--charset", default="utf8mb4", help="Connection charset (default utf8mb4)"
    )
    parser.add_argument(
        "--resume-line",
        type=int,
        default=1,
        help="Line number to resume execution from (1-based)",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=5,
        help="Attempts per statement and per connection (default 5)",
    )
    parser.add_argument(
        "--retry-interval",
        type=float,
        default=5.0,
        help="Seconds to wait between attempts (default 5)",
    )
    parser.add_argument(
        "--boundary",
        choices=BOUNDARY_NAMES,
        default="line-end",
        help="Statement boundary detection (default line-end)",
    )
    parser.add_argument(
        "--trailing-statement",
        choices=TRAILING_POLICIES,
        default="drop",
        help="What to do with an unterminated statement at end of file (default drop)",
    )
    parser.add_argument(
        "--progress-bar",
        action="store_true",
        help="Show a live progress bar in the terminal",
    )
    parser.add_argument(
        "--progress-statements",
        type=int,
        default=1000,
        help="Log progress every N applied statements (0 disables)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Write logs to a file in addition to stdout",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Split and report without connecting or executing",
    )
    parser.add_argument(
        "--prompt-password",
        action="store_true",
        help="Ask for the password when none is given",
    )
    parser.add_argument("--ssl-ca", default=None, help="SSL CA file")
    parser.add_argument("--ssl-cert", default=None, help="SSL cert file")
    parser.add_argument("--ssl-key", default=None, help="SSL key file")
    parser.add_argument(
        "--ssl-disabled", action="store_true", help="Disable SSL"
    )
    return parser


def _config_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    value = value.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return None


_MYSQL_KEYS = ("host", "port", "user", "password", "database", "charset", "ssl_ca", "ssl_cert", "ssl_key", "ssl_disabled")
_RESTORE_KEYS = (
    "dump_file",
    "resume_line",
    "max_retries",
    "retry_interval",
    "boundary",
    "trailing_statement",
    "progress_bar",
    "progress_statements",
    "log_file",
    "dry_run",
)
_INT_KEYS = ("port", "resume_line", "max_retries", "progress_statements")
_FLOAT_KEYS = ("retry_interval",)
_BOOL_KEYS = ("progress_bar", "dry_run", "ssl_disabled")


def load_config(path: str) -> dict:
    # This code here reads INI config into a dict of defaults.
    parser = configparser.ConfigParser()
    if not parser.read(path):
        raise ParseError(f"Config file not found or unreadable: {path}")

    config: dict = {}
    for section, keys in (("mysql", _MYSQL_KEYS), ("restore", _RESTORE_KEYS)):
        for key in keys:
            if parser.has_option(section, key):
                config[key] = parser.get(section, key)

    try:
        for key in _INT_KEYS:
            if key in config:
                config[key] = int(str(config[key]).strip())
        for key in _FLOAT_KEYS:
            if key in config:
                config[key] = float(str(config[key]).strip())
    except ValueError as err:
        raise ParseError(f"Bad number in {path}: {err}") from err

    for key in _BOOL_KEYS:
        if key in config:
            coerced = _config_bool(str(config[key]))
            if coerced is None:
                raise ParseError(f"Bad boolean for {key} in {path}: {config[key]!r}")
            config[key] = coerced

    for key, choices in (("boundary", BOUNDARY_NAMES), ("trailing_statement", TRAILING_POLICIES)):
        if key in config and config[key] not in choices:
            raise ParseError(f"Bad value for {key} in {path}: {config[key]!r}")

    return config


def parse_args(argv: Iterable[str]) -> RestoreOptions:
    # This code here merges config + CLI + env vars.
    parser = build_arg_parser()
    argv_list = list(argv)
    prelim, _ = parser.parse_known_args(argv_list)
    if prelim.config:
        config_defaults = load_config(prelim.config)
        parser.set_defaults(**config_defaults)
        logging.info("Loaded config defaults from %s", prelim.config)

    args = parser.parse_args(argv_list)

    if not args.dump_file:
        parser.error("--file is required (or set dump_file in config)")
    if args.resume_line < 1:
        parser.error("--resume-line must be >= 1")
    if args.max_retries < 1:
        parser.error("--max-retries must be >= 1")
    if args.retry_interval < 0:
        parser.error("--retry-interval must be >= 0")
    if args.progress_statements < 0:
        parser.error("--progress-statements must be >= 0")

    def provided(*flags: str) -> bool:
        return any(a == f or a.startswith(f + "=") for a in argv_list for f in flags)

    host = args.host
    if not provided("--host"):
        host = env_override(None, "MYSQL_HOST") or host

    port = args.port
    if not provided("--port"):
        env_port = env_override(None, "MYSQL_PORT")
        if env_port:
            try:
                port = int(env_port)
            except ValueError:
                parser.error(f"MYSQL_PORT must be an integer, got {env_port!r}")

    user = args.user
    if not provided("--user"):
        user = env_override(None, "MYSQL_USER") or user

    database = args.database
    if not provided("--db", "--database"):
        database = env_override(None, "MYSQL_DATABASE") or database

    password = args.password
    if not provided("--password"):
        password = env_override(None, "MYSQL_PASSWORD") or password
    if not password and args.prompt_password and not args.dry_run:
        password = getpass("MySQL password: ")

    return RestoreOptions(
        dump_file=args.dump_file,
        host=host,
        port=port,
        user=user,
        password=password or "",
        database=database or None,
        charset=args.charset,
        resume_line=args.resume_line,
        max_retries=args.max_retries,
        retry_interval=args.retry_interval,
        boundary=args.boundary,
        trailing_statement=args.trailing_statement,
        progress_bar=args.progress_bar,
        progress_statements=args.progress_statements,
        log_file=args.log_file,
        dry_run=args.dry_run,
        ssl_ca=args.ssl_ca,
        ssl_cert=args.ssl_cert,
        ssl_key=args.ssl_key,
        ssl_disabled=args.ssl_disabled,
    )
