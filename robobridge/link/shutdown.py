"""
Graceful shutdown of a link handle.

``close_gracefully`` is used on every exit path of the lifecycle manager
(explicit stop, failed start, stale handle, link loss), so it must always
finish: every failure falls through to ``handle.destroy()``.  The caller is
expected to have already dropped its own reference to the handle.
"""

import logging

from robobridge.link.handle import LinkHandle

logger = logging.getLogger(__name__)


async def close_gracefully(handle: LinkHandle | None) -> None:
    """Detach listeners, flush, drain and close ``handle``.  Never raises."""
    if handle is None:
        return

    try:
        handle.remove_all_listeners()
    except Exception as exc:
        logger.debug("Ignoring listener detach error on %s: %s", handle.path, exc)

    if handle.is_open:
        try:
            await handle.flush()
            await handle.drain()
            await handle.close()
        except Exception as exc:
            logger.warning(
                "Clean close of %s failed: %s; destroying handle", handle.path, exc
            )
            handle.destroy()
        return

    try:
        await handle.close()
    except Exception as exc:
        logger.debug("Close of already-closed %s failed: %s", handle.path, exc)
        handle.destroy()
