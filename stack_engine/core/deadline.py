# stack_engine/core/deadline.py
"""Bounded calls: run a callable with a deadline, raise on overrun."""

import logging
import threading
from typing import Any, Callable, Dict, Optional

from stack_engine.core.errors import OperationTimeout

logger = logging.getLogger(__name__)


def call_with_deadline(
    fn: Callable[..., Any],
    timeout: Optional[float],
    *args,
    description: Optional[str] = None,
    **kwargs,
) -> Any:
    """
    Call `fn(*args, **kwargs)` and wait at most `timeout` seconds.

    The call runs on a daemon thread. When the deadline passes the caller
    gets OperationTimeout; the abandoned thread is left to finish on its own
    and its result is discarded.

    Args:
        fn: Callable to run
        timeout: Deadline in seconds (None or <= 0 runs inline, unbounded)
        description: Label used in the timeout message

    Returns:
        Whatever `fn` returns

    Raises:
        OperationTimeout: If the deadline is exceeded
        Exception: Anything `fn` raised
    """
    label = description or getattr(fn, "__name__", "call")

    if timeout is None or timeout <= 0:
        return fn(*args, **kwargs)

    outcome: Dict[str, Any] = {}
    finished = threading.Event()

    def _target():
        try:
            outcome["value"] = fn(*args, **kwargs)
        except BaseException as e:
            outcome["error"] = e
        finally:
            finished.set()

    thread = threading.Thread(target=_target, name=f"deadline:{label}", daemon=True)
    thread.start()

    if not finished.wait(timeout):
        logger.warning(f"[deadline] {label} exceeded {timeout}s, abandoning call")
        raise OperationTimeout(f"{label} exceeded its {timeout}s deadline")

    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")
