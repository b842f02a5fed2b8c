"""
Retry helper for remote calls (LLM prompts, HTTP endpoints).

`retry(fn)` returns a coroutine function that accepts the same arguments as
`fn` plus `retry_*` keyword options. A falsy result counts as a failed
attempt, so an LLM answering with an empty string is asked again.
"""

import asyncio
import functools
from dataclasses import dataclass
from random import random
from time import monotonic
from typing import Any

from httpx import HTTPStatusError, Response

from owlnotes.logger import logger

# client errors that will not go away by asking again
DEFAULT_STOP_STATUSES = (400, 401, 403, 404, 413, 418)


class RetryException(Exception):
    pass


class RetryTimeoutException(RetryException):
    pass


class RetryHTTPException(RetryException):
    pass


@dataclass
class RetryPolicy:
    attempts: int | None = None
    timeout: float = 60
    backoff_interval: float = 0.1
    backoff_max: float = 3
    jitter: float = 0.1
    stop_statuses: tuple[int, ...] | list[int] = DEFAULT_STOP_STATUSES
    exc_types: tuple[type[BaseException], ...] = (Exception,)
    logger: Any = logger

    @classmethod
    def pop_from(cls, kwargs: dict[str, Any]) -> "RetryPolicy":
        """Take every retry option out of the call kwargs."""
        policy = cls()
        for option, attr in (
            ("retry_attempts", "attempts"),
            ("retry_timeout", "timeout"),
            ("retry_backoff_interval", "backoff_interval"),
            ("retry_backoff_max", "backoff_max"),
            ("retry_jitter", "jitter"),
            ("retry_httpx_status_stop", "stop_statuses"),
            ("retry_ignore_exc_types", "exc_types"),
            ("logger", "logger"),
        ):
            if option in kwargs:
                setattr(policy, attr, kwargs.pop(option))
        return policy

    def next_delay(self, delay: float) -> float:
        return min(delay * 2 + random() * self.jitter, self.backoff_max)

    def exhausted(self, attempts: int) -> bool:
        return self.attempts is not None and attempts >= self.attempts


def _check_response(result):
    if isinstance(result, Response):
        result.raise_for_status()
    return result


def retry(fn):
    fn_name = getattr(fn, "__name__", repr(fn))

    @functools.wraps(fn)
    async def decorated(*args, **kwargs):
        policy = RetryPolicy.pop_from(kwargs)
        log = policy.logger.bind(fn=fn_name)
        delay = policy.backoff_interval
        started = monotonic()
        attempts = 0
        last_error = None

        while True:
            elapsed = monotonic() - started
            if elapsed > policy.timeout:
                raise RetryTimeoutException(
                    f"{fn_name} timed out after {policy.timeout:.1f}s"
                ) from last_error

            try:
                result = _check_response(await fn(*args, **kwargs))
            except HTTPStatusError as e:
                status = e.response.status_code
                log.warning(
                    "Remote call answered with an error status",
                    url=str(e.request.url),
                    status_code=status,
                    body=e.response.text[:500],
                )
                if status in policy.stop_statuses:
                    raise RetryHTTPException(
                        f"HTTP status {status} is not retried"
                    ) from e
                last_error = e
            except policy.exc_types as e:
                log.warning("Attempt failed", attempt=attempts + 1, error=str(e))
                last_error = e
            else:
                if result:
                    return result
                log.warning("Attempt returned nothing", attempt=attempts + 1)

            attempts += 1
            if policy.exhausted(attempts):
                reason = str(last_error) if last_error else "empty result"
                raise RetryException(
                    f"Retry attempts exceeded: {policy.attempts} ({reason})"
                ) from last_error

            delay = policy.next_delay(delay)
            log.debug("Retrying", delay=round(delay, 2), elapsed=round(elapsed, 1))
            await asyncio.sleep(delay)

    return decorated
