"""
Retry and timeout helpers for calls to external services.

Used at the component boundaries (embedding batches, LLM calls). Each attempt
can be bounded by its own timeout; terminal errors are never retried.
"""

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, TypeVar

from ragcore.deadline import Deadline
from ragcore.errors import ContentPolicyError, DeadlineExceeded, TerminalError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_PHRASES = (
    "rate_limit", "rate limit", "too many requests",
    "bad gateway", "service unavailable", "internal server error", "gateway timeout",
    "econnrefused", "econnreset", "connection reset", "connection refused",
    "timed out", "request timeout", "temporarily unavailable", "overloaded",
)

# Status codes only count next to a status word, e.g. "Error code: 503" or "HTTP 502"
_TRANSIENT_STATUS = re.compile(
    r"\b(?:status_code|status|code|http|error)\W{0,3}(?:code\W{0,3})?(?:408|429|5\d\d)\b",
    re.IGNORECASE,
)

_POLICY_MARKERS = ("content_policy", "content policy", "content_filter", "safety")


def _status_code(error: BaseException) -> Optional[int]:
    """Best-effort HTTP status extraction from SDK exceptions."""
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_content_policy_error(error: BaseException) -> bool:
    if isinstance(error, ContentPolicyError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _POLICY_MARKERS)


def is_transient_error(error: BaseException) -> bool:
    """
    Decide whether an error is worth retrying.

    Content-policy rejections and 4xx responses (other than 408/429) are
    terminal. Timeouts, connection failures and 5xx responses are transient.
    """
    if isinstance(error, TerminalError) or is_content_policy_error(error):
        return False
    if isinstance(error, (TransientError, TimeoutError, ConnectionError)):
        return True

    status = _status_code(error)
    if status is not None:
        return status in (408, 429) or status >= 500

    message = str(error).lower()
    if any(phrase in message for phrase in _TRANSIENT_PHRASES):
        return True
    return _TRANSIENT_STATUS.search(message) is not None


def call_with_timeout(
    fn: Callable[[], T],
    timeout: Optional[float],
    label: str = "operation",
) -> T:
    """
    Run ``fn`` and raise ``TimeoutError`` if it does not finish in time.

    The worker thread is abandoned, not joined, so the caller is released
    as soon as the budget runs out.
    """
    if timeout is None:
        return fn()

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"timeout-{label}")
    try:
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            raise TimeoutError(f"{label} timed out after {timeout:.1f}s") from None
    finally:
        executor.shutdown(wait=False)


def with_retry(
    fn: Callable[[], T],
    max_retries: int = 2,
    initial_delay: float = 2.0,
    backoff_multiplier: float = 2.0,
    max_delay: float = 10.0,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    deadline: Optional[Deadline] = None,
) -> T:
    """
    Call ``fn`` with exponential backoff on retryable errors.

    ``max_retries`` excludes the initial attempt. The last error is re-raised
    once attempts are exhausted or an error is not retryable.

    Raises:
        DeadlineExceeded: The next backoff would not finish before ``deadline``
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:
            if attempt >= max_retries or not is_retryable(e):
                raise
            delay = min(initial_delay * (backoff_multiplier ** attempt), max_delay)
            remaining = deadline.remaining() if deadline is not None else None
            if remaining is not None and delay >= remaining:
                logger.warning(f"{label}: no time left to retry after {e}")
                raise DeadlineExceeded(
                    f"{label}: deadline leaves {remaining:.1f}s, backoff needs {delay:.1f}s"
                ) from e
            logger.warning(
                f"{label}: attempt {attempt + 1}/{max_retries + 1} failed ({e}), "
                f"retrying in {delay:.1f}s"
            )
            sleep(delay)
            attempt += 1


def with_retry_and_timeout(
    fn: Callable[[], T],
    timeout: Optional[float],
    label: str = "operation",
    **retry_kwargs,
) -> T:
    """Retry wrapper where every attempt is individually time-boxed."""
    return with_retry(
        lambda: call_with_timeout(fn, timeout, label),
        label=label,
        **retry_kwargs,
    )
