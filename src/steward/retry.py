"""Retry executor for transient failures.

Two variants share one backoff schedule: ``with_retry`` gives up after
``max_attempts``; ``with_persistent_retry`` never gives up on transient
errors (used for claiming work) but escalates its log level once failures
pass ``warn_after_attempts``.
"""

from __future__ import annotations

import socket
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

import httpx

from . import log
from .errors import AuthenticationError, RemoteApiError, StewardError
from .models import RetryConfig

T = TypeVar("T")

TRANSIENT_MESSAGE_PATTERNS = (
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "enotfound",
    "connection reset",
    "connection refused",
    "network error",
    "socket hang up",
    "temporary failure",
    "could not resolve host",
    "name or service not known",
    "502 bad gateway",
    "503 service unavailable",
    "504 gateway timeout",
    "early eof",
    "the remote end hung up unexpectedly",
)


@dataclass(frozen=True)
class RetryAttempt:
    """Details of a failed attempt that is about to be retried."""

    attempt: int
    max_attempts: int | None
    delay: float
    error: BaseException


def is_transient(error: BaseException) -> bool:
    """Classify an error as transient (worth retrying) or fatal.

    Example:
        >>> is_transient(ConnectionResetError("connection reset by peer"))
        True
        >>> is_transient(ValueError("bad input"))
        False
    """
    if isinstance(error, AuthenticationError):
        return False
    if isinstance(error, RemoteApiError):
        return error.recoverable
    if isinstance(error, StewardError) and error.recoverable:
        return True
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, socket.gaierror)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_MESSAGE_PATTERNS)


def _should_retry(error: BaseException, config: RetryConfig) -> bool:
    if isinstance(error, AuthenticationError):
        return False
    if config.only_retryable:
        return is_transient(error)
    return True


def backoff_delays(config: RetryConfig) -> Callable[[], float]:
    """Return a callable yielding successive capped backoff delays."""
    state = {"delay": min(config.initial_delay, config.max_delay)}

    def next_delay() -> float:
        current = state["delay"]
        state["delay"] = min(current * config.backoff_multiplier, config.max_delay)
        return current

    return next_delay


def with_retry(
    operation: Callable[[], T],
    config: RetryConfig,
    *,
    sleep: Callable[[float], None] = time.sleep,
    description: str | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
) -> T:
    """Run ``operation`` with bounded retries and exponential backoff.

    Args:
        operation: Zero-argument callable to run.
        config: Attempt limit and backoff schedule.
        sleep: Delay function, injectable for tests.
        description: Label used in log messages.
        on_retry: Called before each delay.

    Returns:
        The first successful result.

    Raises:
        The last error when attempts are exhausted, or the first non-retryable
        error unchanged.
    """
    label = description or getattr(operation, "__name__", "operation")
    next_delay = backoff_delays(config)
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as exc:
            if attempt >= config.max_attempts or not _should_retry(exc, config):
                raise
            delay = next_delay()
            log.warning(
                f"{label} failed (attempt {attempt}/{config.max_attempts}): {exc}; "
                f"retrying in {delay:.1f}s"
            )
            if on_retry is not None:
                on_retry(RetryAttempt(attempt, config.max_attempts, delay, exc))
            sleep(delay)


def with_persistent_retry(
    operation: Callable[[], T],
    config: RetryConfig,
    *,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Callable[[], bool] | None = None,
    description: str | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
) -> T:
    """Run ``operation`` until it succeeds, for transient failures only.

    Failures beyond ``warn_after_attempts`` are logged at error level so an
    extended outage stays visible. ``should_stop`` is checked after every
    failure; when it returns true the last error is re-raised.
    """
    label = description or getattr(operation, "__name__", "operation")
    next_delay = backoff_delays(config)
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as exc:
            if not _should_retry(exc, config):
                raise
            if should_stop is not None and should_stop():
                raise
            delay = next_delay()
            message = f"{label} failed (attempt {attempt}): {exc}; retrying in {delay:.1f}s"
            if attempt == config.warn_after_attempts:
                log.error(
                    f"{label} has failed {attempt} consecutive times; "
                    "still retrying, check connectivity"
                )
            if attempt >= config.warn_after_attempts:
                log.error(message)
            else:
                log.warning(message)
            if on_retry is not None:
                on_retry(RetryAttempt(attempt, None, delay, exc))
            sleep(delay)
