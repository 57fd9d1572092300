"""
Bounded retry helper.

Used to ride out the delay between a preference write being announced and
cfprefsd actually flushing the file to disk.
"""
import logging
import time
from typing import Callable, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_until(
    func: Callable[[], T],
    accept: Callable[[T], bool],
    delays: Sequence[float] = (0.5, 1.5),
    sleep: Callable[[float], None] = time.sleep,
    immediate: bool = True,
) -> Optional[T]:
    """
    Call func until accept(result) is true or the delay schedule runs out.

    With immediate=True the first call happens right away; each entry of
    delays adds one more attempt after sleeping that many seconds. The number
    of attempts is therefore at most len(delays) + 1 and never more.

    Args:
        func: Zero-argument callable producing a result
        accept: Predicate deciding whether a result is good enough
        delays: Sleep schedule in seconds between attempts
        sleep: Sleep function (injectable for tests)
        immediate: Make one attempt before the first delay

    Returns:
        The first accepted result, or the last result if none was accepted
        (None if no attempt was made)
    """
    result = None
    attempts = len(delays) + (1 if immediate else 0)

    if immediate:
        result = func()
        if accept(result):
            return result

    for attempt, delay in enumerate(delays, start=2 if immediate else 1):
        sleep(delay)
        result = func()
        if accept(result):
            logger.debug(f"Accepted result on attempt {attempt}/{attempts}")
            return result

    logger.debug(f"No accepted result after {attempts} attempts")
    return result
