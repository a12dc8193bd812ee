"""
RETRY UTILITY
=============

Calls a blocking function and, if it raises, retries a few times with
exponential backoff. Used for Cloudinary uploads so a network blip or a rate
limit doesn't fail the user's image upload outright.

retry_if decides which errors are worth another attempt; anything it rejects
(a bad request, wrong credentials) is raised straight away instead of being
retried with the same inputs.

Runs inside the threadpool (never on the event loop), so time.sleep is fine.

Example:
  result = with_retry(lambda: uploader.upload(data, folder="chat-images"),
                      max_retries=3, initial_delay=0.5,
                      retry_if=lambda e: not isinstance(e, BadRequest))
"""

import logging
import time
from typing import Callable, Optional, TypeVar


logger = logging.getLogger("chatstream")

T = TypeVar("T")


def with_retry(
    fn: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    retry_if: Optional[Callable[[Exception], bool]] = None,
) -> T:
    """
    Execute fn(). On an error that retry_if accepts (every error when retry_if
    is None), sleep and try again, doubling the delay each time. The last
    error is re-raised after max_retries attempts; rejected errors right away.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    delay = initial_delay
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as e:
            if attempt >= max_retries or (retry_if is not None and not retry_if(e)):
                raise
            logger.warning(
                "Attempt %s/%s failed (%s). Retrying in %.1fs: %s",
                attempt,
                max_retries,
                getattr(fn, "__name__", "call"),
                delay,
                e,
            )
            time.sleep(delay)
            delay *= 2
