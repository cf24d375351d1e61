"""
Timeout helper for blocking document work (PDF rendering, blob I/O).

Work runs on a shared thread pool and the caller waits at most `timeout`
seconds. A call that overruns is abandoned, not killed; `on_abandon`
receives its future so the caller can clean up whatever it eventually
produces.
"""

import atexit
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional

from .exceptions import OperationTimeoutError

logger = logging.getLogger(__name__)

MAX_WORKERS = 8

_executor = ThreadPoolExecutor(max_workers=MAX_WORKERS, thread_name_prefix='documents-io')
atexit.register(_executor.shutdown, wait=False)


def run_with_timeout(
    func: Callable[..., Any],
    *args: Any,
    timeout: Optional[float] = None,
    description: str = 'operation',
    on_abandon: Optional[Callable[[Future], None]] = None,
    **kwargs: Any,
) -> Any:
    """
    Call `func(*args, **kwargs)`, raising OperationTimeoutError after `timeout` seconds.

    A timeout of None or 0 runs the call inline. Exceptions raised by
    `func` propagate unchanged.
    """
    if not timeout:
        return func(*args, **kwargs)

    future = _executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        if not future.cancel() and on_abandon is not None:
            future.add_done_callback(on_abandon)
        logger.warning(f"{description} timed out after {timeout}s")
        raise OperationTimeoutError(f"{description} timed out after {timeout}s", timeout=timeout)
