from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

from .types import RetryExhausted, RetryPolicy

T = TypeVar("T")

FailureSink = Callable[[int, Exception], None]


def retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    on_failure: Optional[FailureSink] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call operation() until it succeeds or policy.max_attempts is used up.
    Every failure is reported to on_failure(attempt, err) first; the fixed
    policy.interval sleep happens only between attempts.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as err:
            if on_failure is not None:
                on_failure(attempt, err)
            if attempt >= policy.max_attempts:
                raise RetryExhausted(attempt, err) from err
        sleep(policy.interval)


def execute_with_retry(
    conn,
    statement: str,
    policy: RetryPolicy,
    on_failure: Optional[FailureSink] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    # This code here is one statement against the session; RetryExhausted is fatal upstream.
    retry(lambda: conn.execute(statement), policy, on_failure=on_failure, sleep=sleep)
