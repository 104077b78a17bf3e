from __future__ import annotations

import logging
from typing import Callable, Optional

from .executor import retry
from .types import DatabaseConnectionError, RestoreOptions, RetryExhausted, RetryPolicy

MYSQLCLIENT_AVAILABLE = False
PYMYSQL_AVAILABLE = False

try:
    import MySQLdb  # type: ignore
    from MySQLdb.constants import CLIENT as MYSQLCLIENT

    MYSQLCLIENT_AVAILABLE = True
except ImportError:
    MYSQLCLIENT_AVAILABLE = False

try:
    import pymysql  # type: ignore
    from pymysql.constants import CLIENT as PYMYSQLCLIENT

    PYMYSQL_AVAILABLE = True
except ImportError:
    PYMYSQL_AVAILABLE = False


def detect_driver(prefer_mysqlclient: bool = True) -> str:
    # This code here picks mysqlclient first, then PyMySQL as backup.
    if prefer_mysqlclient and MYSQLCLIENT_AVAILABLE:
        return "mysqlclient"
    if PYMYSQL_AVAILABLE:
        return "pymysql"
    if MYSQLCLIENT_AVAILABLE:
        return "mysqlclient"
    raise RuntimeError("No MySQL driver found. Install mysqlclient or PyMySQL.")


def _ssl_options(opts: RestoreOptions) -> Optional[dict]:
    if opts.ssl_disabled or not (opts.ssl_ca or opts.ssl_cert or opts.ssl_key):
        return None
    ssl = {}
    if opts.ssl_ca:
        ssl["ca"] = opts.ssl_ca
    if opts.ssl_cert:
        ssl["cert"] = opts.ssl_cert
    if opts.ssl_key:
        ssl["key"] = opts.ssl_key
    return ssl


def build_connection(opts: RestoreOptions):
    # This code here opens one autocommit, multi-statement connection.
    driver = detect_driver(prefer_mysqlclient=True)
    ssl = _ssl_options(opts)
    password = opts.password or ""

    if driver == "mysqlclient":
        kwargs = {
            "host": opts.host,
            "port": opts.port,
            "user": opts.user,
            "passwd": password,
            "charset": opts.charset,
            "use_unicode": True,
            "autocommit": True,
            "client_flag": MYSQLCLIENT.MULTI_STATEMENTS,
        }
        if opts.database:
            kwargs["db"] = opts.database
        if ssl is not None:
            kwargs["ssl"] = ssl
        return MySQLdb.connect(**kwargs)

    if driver == "pymysql":
        kwargs = {
            "host": opts.host,
            "port": opts.port,
            "user": opts.user,
            "password": password,
            "charset": opts.charset,
            "autocommit": True,
            "client_flag": PYMYSQLCLIENT.MULTI_STATEMENTS,
        }
        if opts.database:
            kwargs["database"] = opts.database
        if ssl is not None:
            kwargs["ssl"] = ssl
        return pymysql.connect(**kwargs)

    raise RuntimeError("No compatible driver.")


class MySQLSession:
    """
    The connection the restore runs on: ping(), execute(), close().

    After a failed execute the next one pings first and reopens the
    connection through ``factory`` if the server went away.
    """

    def __init__(self, conn, factory: Optional[Callable[[], object]] = None) -> None:
        self.conn = conn
        self.factory = factory
        self._suspect = False

    def ping(self) -> None:
        self.conn.ping()

    def execute(self, statement: str) -> None:
        if self._suspect:
            self._revive()
        cursor = self.conn.cursor()
        try:
            cursor.execute(statement)
            # Multi-statement text leaves extra result sets that must be read.
            while cursor.nextset():
                pass
        except Exception:
            self._suspect = True
            raise
        finally:
            cursor.close()
        self._suspect = False

    def _revive(self) -> None:
        try:
            self.conn.ping()
            return
        except Exception as err:
            if self.factory is None:
                raise
            logging.warning("Connection lost (%s); reconnecting", err)
        try:
            self.conn.close()
        except Exception as err:
            logging.debug("Ignoring close error on dead connection: %s", err)
        self.conn = self.factory()
        self._suspect = False

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "MySQLSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class DryRunSession:
    # This code here stands in for a server during --dry-run; it only counts.
    def __init__(self) -> None:
        self.executed = 0

    def ping(self) -> None:
        pass

    def execute(self, statement: str) -> None:
        self.executed += 1
        logging.debug("DRY RUN: %s", statement.strip()[:200])

    def close(self) -> None:
        logging.info("DRY RUN: %d statement(s) parsed", self.executed)

    def __enter__(self) -> "DryRunSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def connect_with_retry(
    opts: RestoreOptions,
    policy: RetryPolicy,
    connect: Optional[Callable[[RestoreOptions], object]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> MySQLSession:
    # This code here opens + pings under the same retry policy as statements.
    connect = connect or build_connection

    def attempt() -> MySQLSession:
        conn = connect(opts)
        session = MySQLSession(conn, factory=lambda: connect(opts))
        try:
            session.ping()
        except Exception:
            try:
                conn.close()
            except Exception as err:
                logging.debug("Ignoring close error after failed ping: %s", err)
            raise
        return session

    def on_failure(attempt_no: int, err: Exception) -> None:
        if attempt_no < policy.max_attempts:
            logging.warning(
                "DB connection failed: %s. Retrying in %.0fs (attempt %d/%d)",
                err,
                policy.interval,
                attempt_no,
                policy.max_attempts,
            )
        else:
            logging.warning("DB connection failed: %s (attempt %d/%d)", err, attempt_no, policy.max_attempts)

    kwargs = {"on_failure": on_failure}
    if sleep is not None:
        kwargs["sleep"] = sleep
    try:
        session = retry(attempt, policy, **kwargs)
    except RetryExhausted as err:
        raise DatabaseConnectionError(
            f"could not connect to {opts.host}:{opts.port} as {opts.user}: {err.last_error}"
        ) from err
    logging.info(
        "Connected to %s:%s as %s (database=%s)",
        opts.host,
        opts.port,
        opts.user,
        opts.database or "-",
    )
    return session
