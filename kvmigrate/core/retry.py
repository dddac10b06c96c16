# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Retry and bounded-polling helpers.

Every wait in the migration engine goes through one of these so that it has
an explicit upper bound and an injectable sleep.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Optional, Tuple, Type, TypeVar, Union

T = TypeVar("T")

ExcTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


def _backoff(attempt: int, base_backoff_s: float, max_backoff_s: float, jitter_s: float) -> float:
    sleep_time = min(base_backoff_s * (2 ** (attempt - 1)), max_backoff_s)
    if jitter_s > 0:
        sleep_time += random.uniform(0, jitter_s)
    return sleep_time


def retry_operation(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_backoff_s: float = 2.0,
    max_backoff_s: float = 60.0,
    jitter_s: float = 1.0,
    exceptions: ExcTypes = Exception,
    operation_name: str = "operation",
    logger: Optional[Any] = None,
    log_level: int = logging.WARNING,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Retry an operation with exponential backoff.

        ticket = retry_operation(
            lambda: session.post(url, json=payload, timeout=30),
            max_attempts=3,
            exceptions=requests.ConnectionError,
            operation_name="mtunnel ticket",
            logger=log,
        )

    The last exception is re-raised once attempts are exhausted.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except exceptions as e:
            if attempt >= max_attempts:
                if logger:
                    logger.log(logging.ERROR, "%s failed after %d attempts: %s", operation_name, max_attempts, e)
                raise
            sleep_time = _backoff(attempt, base_backoff_s, max_backoff_s, jitter_s)
            if logger:
                logger.log(
                    log_level,
                    "%s failed (attempt %d/%d): %s. Retrying in %.2fs...",
                    operation_name,
                    attempt,
                    max_attempts,
                    e,
                    sleep_time,
                )
            (sleep or time.sleep)(sleep_time)
    raise RuntimeError(f"{operation_name} failed with no attempts made")


def poll_until(
    predicate: Callable[[], bool],
    *,
    retries: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Evaluate `predicate` up to `retries` times, sleeping `interval` between
    attempts. Returns True as soon as it holds, False when retries run out.
    """
    for i in range(retries):
        if predicate():
            return True
        if i + 1 < retries:
            sleep(interval)
    return False
