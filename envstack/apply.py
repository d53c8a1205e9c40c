"""
Apply-with-retry: commit a change set while the remote finishes computing.

The remote rejects force-apply with HTTP 428 while dependent attribute values
are still being recalculated. That rejection (surfaced by the client as
ApplyConflict) is the only error retried here; anything else propagates on the
first occurrence.
"""

import logging
import time
from typing import Any, Callable

from envstack.errors import ApplyConflict, ApplyTimeout

logger = logging.getLogger(__name__)


DEFAULT_APPLY_TIMEOUT = 120
DEFAULT_APPLY_INTERVAL = 5


def apply_with_retry(
    client,
    change_set_id: str,
    timeout: float = DEFAULT_APPLY_TIMEOUT,
    interval: float = DEFAULT_APPLY_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> dict[str, Any]:
    """
    Force-apply a change set, retrying while dependent values are calculating.

    A retry only happens when more than ``interval`` seconds remain in the
    budget, so the loop never sleeps past ``timeout``.

    Args:
        client: RemoteGraphClient (anything with ``force_apply``)
        change_set_id: Change set to commit
        timeout: Wall-clock budget in seconds
        interval: Fixed wait between attempts in seconds
        sleep: Sleep function (injected in tests)
        clock: Monotonic clock (injected in tests)

    Returns:
        The force-apply response body

    Raises:
        ApplyTimeout: Budget exhausted while the remote kept answering 428
        EnvstackError: Any other failure, unretried
    """
    start = clock()
    attempt = 0

    while clock() - start < timeout:
        attempt += 1
        try:
            result = client.force_apply(change_set_id)
        except ApplyConflict:
            remaining = timeout - (clock() - start)
            if remaining > interval:
                logger.info(
                    "Dependent values still calculating. Retrying in %ss... (%.1fs remaining)",
                    interval,
                    remaining,
                )
                sleep(interval)
                continue
            logger.warning(
                "Dependent values still calculating after %d attempt(s); %.1fs left is "
                "not enough for another retry",
                attempt,
                remaining,
            )
            break

        logger.info("Change set %s applied successfully (attempt %d)", change_set_id, attempt)
        return result

    raise ApplyTimeout(change_set_id, clock() - start)
