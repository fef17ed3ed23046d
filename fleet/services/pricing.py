"""Time-bounded cache of node-size pricing."""

import logging
import time
from collections.abc import Callable
from typing import Optional

from fleet.models import PricingInfo
from fleet.services.do_client import DigitalOceanClient

logger = logging.getLogger(__name__)

DEFAULT_TTL = 60 * 60


class PricingCache:
    """Memoizes size pricing lookups for ``ttl`` seconds.

    Misses are not cached. Concurrent misses for the same slug may each
    hit the provider; the last one to finish wins.
    """

    def __init__(
        self,
        client: DigitalOceanClient,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[PricingInfo, float]] = {}

    async def get_price(self, size_slug: str) -> Optional[PricingInfo]:
        """Return pricing for ``size_slug``, or None if the provider has none."""
        cached = self._entries.get(size_slug)
        if cached and self._clock() - cached[1] < self.ttl:
            return cached[0]

        for size in await self.client.list_sizes():
            if size.slug == size_slug:
                self._entries[size_slug] = (size, self._clock())
                return size

        logger.warning("No pricing found for size %s", size_slug)
        return None
