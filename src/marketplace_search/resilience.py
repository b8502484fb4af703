from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
import logging
import time
from typing import Callable, TypeVar


T = TypeVar("T")

_LOGGER = logging.getLogger(__name__)
_PROVIDER_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="provider-call")


def run_with_timeout(operation: str, fn: Callable[[], T], timeout_seconds: float) -> T:
    safe_timeout = max(0.1, float(timeout_seconds))
    future = _PROVIDER_EXECUTOR.submit(fn)
    try:
        return future.result(timeout=safe_timeout)
    except FutureTimeoutError as exc:
        future.cancel()
        raise RuntimeError(f"{operation} timed out after {safe_timeout:g}s.") from exc
    except Exception as exc:
        raise RuntimeError(f"{operation} failed: {exc}") from exc


def call_with_retry(
    operation: str,
    fn: Callable[[], T],
    *,
    timeout_seconds: float,
    attempts: int = 3,
    backoff_seconds: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` with a per-call timeout, retrying with exponential backoff.

    The last failure is re-raised as ``RuntimeError`` once the budget is spent.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return run_with_timeout(operation, fn, timeout_seconds)
        except RuntimeError as exc:
            if attempt == attempts:
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            _LOGGER.warning("%s attempt %d/%d failed, retrying in %.2fs: %s", operation, attempt, attempts, delay, exc)
            sleep(delay)
    raise RuntimeError(f"{operation} was never attempted.")
