# BFS library - db - transaction retries
# Copyright (C) 2025  Clyso GmbH
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.

import random
import time
from collections.abc import Callable
from typing import TypeVar, override

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from bfslib.config.db import DBConfig
from bfslib.db import logger as parent_logger
from bfslib.db.engine import Database
from bfslib.errors import BFSError

logger = parent_logger.getChild("retry")

# serialization failure, deadlock detected
_RECOVERABLE_SQLSTATES = {"40001", "40P01"}

T = TypeVar("T")

SleepFn = Callable[[float], None]


class RecoverableError(BFSError):
    """A transient storage failure, safe to retry."""

    @override
    def __str__(self) -> str:
        return "Recoverable storage error" + (f": {self.msg}" if self.msg else "")


class RetriesExhaustedError(BFSError):
    """A transaction kept failing on recoverable errors, and we gave up."""

    @override
    def __str__(self) -> str:
        return "Retries exhausted" + (f": {self.msg}" if self.msg else "")


def is_recoverable(e: BaseException) -> bool:
    """Check whether an error is a recoverable storage failure."""
    if isinstance(e, RecoverableError):
        return True

    if not isinstance(e, DBAPIError):
        return False

    if e.connection_invalidated or isinstance(e, OperationalError):
        return True

    sqlstate = getattr(e.orig, "sqlstate", None) or getattr(e.orig, "pgcode", None)
    return sqlstate in _RECOVERABLE_SQLSTATES


class Backoff:
    """Jittered, bounded, exponential backoff between transaction attempts."""

    _backoff: float
    _factor: float
    _max: float
    _sleep: SleepFn

    def __init__(
        self,
        backoff: float,
        factor: float,
        max_backoff: float,
        *,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self._backoff = backoff
        self._factor = factor
        self._max = max_backoff
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: DBConfig, *, sleep: SleepFn = time.sleep) -> "Backoff":
        return cls(
            config.backoff, config.backoff_factor, config.backoff_max, sleep=sleep
        )

    def delay(self, retry: int) -> float:
        """Obtain the delay before the `retry`-th retry, starting at zero."""
        if retry == 0:
            return 0.0
        delay = min(self._max, self._backoff * (self._factor ** (retry - 1)))
        return delay + random.random() * delay  # noqa: S311

    def wait(self, retry: int) -> None:
        # first retry only yields, most conflicts clear immediately.
        self._sleep(self.delay(retry))


def retry_transaction(
    db: Database,
    fn: Callable[[Session], T],
    *,
    retry_max: int,
    backoff: Backoff,
    what: str = "transaction",
) -> T:
    """
    Run `fn` within a transaction, retrying on recoverable errors.

    `fn` may be called multiple times, each time on a new session, and must
    not keep any state across calls. Non-recoverable errors propagate
    immediately.
    """
    for attempt in range(retry_max):
        try:
            with db.begin() as session:
                return fn(session)
        except Exception as e:
            if not is_recoverable(e):
                raise

            left = retry_max - attempt - 1
            if left == 0:
                msg = f"{what}: {e}; no retries left"
                logger.error(msg)
                raise RetriesExhaustedError(msg) from e

            logger.debug(f"{what}: {e}; {left} retries left")
            backoff.wait(attempt)

    msg = f"{what}: no attempts allowed"
    logger.error(msg)
    raise RetriesExhaustedError(msg)
