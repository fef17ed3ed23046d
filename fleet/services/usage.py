"""Best-effort infrastructure usage events for commerce analytics."""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional

import httpx

from fleet.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class UsageTracker:
    """Posts usage events to the configured endpoint.

    Does nothing when no endpoint is configured. Failures are logged and
    dropped so usage tracking can never fail a cluster operation.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    def enabled(self) -> bool:
        return bool(self.settings.usage_endpoint)

    async def record(self, org_id: str, properties: dict[str, Any]) -> None:
        """Record one usage event for an organization."""
        if not self.enabled:
            return

        payload = {
            "organization_id": org_id,
            "event": "infrastructure_usage",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "properties": properties,
        }

        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    self.settings.usage_endpoint,
                    json=payload,
                    timeout=self.settings.usage_timeout,
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning("Usage tracking failed for org %s: %s", org_id, e)


@lru_cache
def get_usage_tracker() -> UsageTracker:
    """Get the process-wide usage tracker."""
    return UsageTracker()
