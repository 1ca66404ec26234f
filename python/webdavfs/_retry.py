# This file is part of webdavfs.
#
# Developed for the LSST Data Management System.
# This product includes software developed by the LSST Project
# (https://www.lsst.org).
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("RETRYABLE_STATUSES", "RetryPolicy", "RetryingExecutor")

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from http import HTTPStatus
from typing import Protocol

from ._transport import DavRequest, DavResponse
from .davutils import redact_url

log = logging.getLogger(__name__)

# HTTP statuses of responses which are worth retrying.
RETRYABLE_STATUSES: frozenset[int] = frozenset(
    {
        HTTPStatus.TOO_MANY_REQUESTS,
        HTTPStatus.INTERNAL_SERVER_ERROR,
        HTTPStatus.BAD_GATEWAY,
        HTTPStatus.SERVICE_UNAVAILABLE,
        HTTPStatus.GATEWAY_TIMEOUT,
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times and how long to wait before retrying a request.

    Attempts are numbered from 0. The delay before retry ``n`` (n >= 1) is
    ``min(base_delay * backoff_factor**(n - 1), delay_cap)`` seconds.
    """

    max_attempts: int = 3
    base_delay: float = 0.1
    delay_cap: float = 5.0
    backoff_factor: float = 2.0

    def delay(self, retry: int) -> float:
        """Return the time in seconds to wait before retry number `retry`."""
        return min(self.base_delay * self.backoff_factor ** (retry - 1), self.delay_cap)


class _Executable(Protocol):
    def execute(self, request: DavRequest) -> DavResponse: ...


class RetryingExecutor:
    """Send requests through a session, retrying transient failures.

    Parameters
    ----------
    session : `DavSession`
        Session to send requests with.
    policy : `RetryPolicy`, optional
        Retry policy.
    sleep : `~collections.abc.Callable`, optional
        Function called to wait between attempts.
    """

    def __init__(
        self,
        session: _Executable,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session
        self._policy: RetryPolicy = policy if policy is not None else RetryPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @staticmethod
    def is_retryable(resp: DavResponse) -> bool:
        """Return True if `resp` reports a transient failure."""
        if resp.error_kind is not None:
            return resp.error_kind.retryable

        return resp.status in RETRYABLE_STATUSES

    def execute(self, request: DavRequest) -> DavResponse:
        """Send `request`, retrying up to the policy's maximum number of
        attempts.

        Returns
        -------
        response : `DavResponse`
            The first non-retryable response, or the last response if all
            retries were exhausted. No exception is raised for HTTP or
            transport errors: the caller decides how to surface them.
        """
        attempt = 0
        while True:
            resp = self._session.execute(request)
            if not self.is_retryable(resp):
                return resp

            if attempt >= self._policy.max_attempts:
                log.warning(
                    "giving up %s %s after %d attempts: %s",
                    request.method,
                    redact_url(request.full_url),
                    attempt + 1,
                    resp.error if resp.failed else f"status {resp.status} {resp.reason}",
                )
                return resp

            attempt += 1
            delay = self._policy.delay(attempt)
            log.debug(
                "retrying %s %s in %.3f seconds (attempt %d/%d): %s",
                request.method,
                redact_url(request.full_url),
                delay,
                attempt,
                self._policy.max_attempts,
                resp.error if resp.failed else f"status {resp.status} {resp.reason}",
            )
            self._sleep(delay)
