"""
Bounded retry policy for opening the serial link.

A port that was just released by another process (or by our own previous
session) often reports "busy" or "access denied" for a few hundred
milliseconds.  Those errors are retried after a fixed delay; everything else
fails the open immediately.
"""

import asyncio
import logging

from robobridge.link.errors import OpenError
from robobridge.link.handle import LinkHandle

logger = logging.getLogger(__name__)

DEFAULT_OPEN_ATTEMPTS: int = 3
DEFAULT_OPEN_RETRY_DELAY: float = 0.4


async def open_with_retries(
    handle: LinkHandle,
    attempts: int = DEFAULT_OPEN_ATTEMPTS,
    delay: float = DEFAULT_OPEN_RETRY_DELAY,
) -> None:
    """
    Open ``handle``, retrying transient failures up to ``attempts`` times.

    The delay between attempts is fixed.  Raises the last ``OpenError`` when
    the error is fatal or the attempts are exhausted.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            await handle.open()
            if attempt > 1:
                logger.info("Opened %s on attempt %d/%d", handle.path, attempt, attempts)
            return
        except OpenError as exc:
            if not exc.transient or attempt == attempts:
                logger.warning(
                    "Opening %s failed (%s, attempt %d/%d): %s",
                    handle.path,
                    exc.kind.value,
                    attempt,
                    attempts,
                    exc,
                )
                raise
            logger.info(
                "Opening %s failed transiently (attempt %d/%d): %s, retrying in %.2fs",
                handle.path,
                attempt,
                attempts,
                exc,
                delay,
            )
            # Release whatever the failed open may have half-acquired.
            handle.destroy()
            await asyncio.sleep(delay)
