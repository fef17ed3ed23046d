"""DigitalOcean Kubernetes API client."""

import logging
import re
from typing import Any, Optional

import httpx

from fleet.exceptions import ConfigurationError, ProviderError
from fleet.models import PricingInfo
from fleet.settings import Settings, get_settings

logger = logging.getLogger(__name__)

MIN_POOL_NODES = 1
MIN_POOL_CEILING = 6
POOL_CEILING_FACTOR = 3


def autoscale_bounds(count: int) -> tuple[int, int]:
    """Return (min_nodes, max_nodes) for a pool with ``count`` nodes."""
    return MIN_POOL_NODES, max(count * POOL_CEILING_FACTOR, MIN_POOL_CEILING)


def cluster_slug(prefix: str, org_name: str) -> str:
    """Build the provider cluster name for an organization."""
    return f"{prefix}-{re.sub(r'[^a-z0-9]', '-', org_name.lower())[:40]}"


class DigitalOceanClient:
    """Client for the DigitalOcean Kubernetes (DOKS) API.

    Every call needs ``do_api_token``; a missing token raises
    ConfigurationError before any request is made. Upstream failures are
    raised as ProviderError. Nothing is retried here since create and
    add-pool calls are not idempotent.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.api_base = self.settings.do_api_base.rstrip("/")

    def _headers(self) -> dict[str, str]:
        if not self.settings.do_api_token:
            raise ConfigurationError("DO_API_TOKEN not configured")
        return {
            "Authorization": f"Bearer {self.settings.do_api_token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = self._headers()
        url = f"{self.api_base}{path}"

        async with httpx.AsyncClient() as client:
            try:
                response = await client.request(
                    method,
                    url,
                    headers=headers,
                    json=json,
                    params=params,
                    timeout=self.settings.provider_timeout,
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise ProviderError(
                    _upstream_message(e.response),
                    upstream_status=e.response.status_code,
                ) from e
            except httpx.RequestError as e:
                raise ProviderError(
                    f"{method} {path} failed: {e}" if str(e) else f"{method} {path} failed"
                ) from e
            return response

    # =========================================================================
    # CLUSTERS
    # =========================================================================

    async def create_cluster(
        self,
        org_id: str,
        org_name: str,
        region: Optional[str] = None,
        node_size: Optional[str] = None,
        node_count: Optional[int] = None,
        ha: bool = False,
    ) -> dict[str, Any]:
        """Create a DOKS cluster for an organization.

        Args:
            org_id: Organization id, stored as a cluster tag
            org_name: Organization name, used to build the cluster name
            region: Region slug (defaults to do_default_region)
            node_size: Droplet size of the initial pool
            node_count: Node count of the initial pool
            ha: Whether to request an HA control plane

        Returns:
            The provider's ``kubernetes_cluster`` object
        """
        prefix = self.settings.cluster_name_prefix
        name = cluster_slug(prefix, org_name)
        count = node_count or self.settings.do_default_node_count
        min_nodes, max_nodes = autoscale_bounds(count)

        body = {
            "name": name,
            "region": region or self.settings.do_default_region,
            "version": self.settings.do_k8s_version,
            "ha": ha,
            "node_pools": [
                {
                    "size": node_size or self.settings.do_default_node_size,
                    "name": f"{name}-pool",
                    "count": count,
                    "auto_scale": True,
                    "min_nodes": min_nodes,
                    "max_nodes": max_nodes,
                }
            ],
            "auto_upgrade": True,
            "surge_upgrade": True,
            "maintenance_policy": {
                "start_time": "04:00",
                "day": "sunday",
            },
            "tags": [f"org:{org_id}", f"{prefix}-managed", "paas"],
        }

        response = await self._request("POST", "/kubernetes/clusters", json=body)
        return response.json()["kubernetes_cluster"]

    async def get_cluster(self, cluster_id: str) -> dict[str, Any]:
        """Get a cluster."""
        response = await self._request("GET", f"/kubernetes/clusters/{cluster_id}")
        return response.json()["kubernetes_cluster"]

    async def get_kubeconfig(self, cluster_id: str) -> str:
        """Get the kubeconfig (YAML text) for a cluster."""
        response = await self._request("GET", f"/kubernetes/clusters/{cluster_id}/kubeconfig")
        return response.text

    async def delete_cluster(self, cluster_id: str) -> None:
        """Delete a cluster together with its load balancers and volumes."""
        await self._request(
            "DELETE",
            f"/kubernetes/clusters/{cluster_id}",
            params={"destroy_associated_resources": "true"},
        )

    async def upgrade_to_ha(self, cluster_id: str) -> dict[str, Any]:
        """Upgrade a cluster to an HA control plane."""
        response = await self._request(
            "PUT", f"/kubernetes/clusters/{cluster_id}", json={"ha": True}
        )
        return response.json()["kubernetes_cluster"]

    # =========================================================================
    # NODE POOLS
    # =========================================================================

    async def add_node_pool(
        self,
        cluster_id: str,
        name: str,
        size: Optional[str] = None,
        count: Optional[int] = None,
    ) -> dict[str, Any]:
        """Add an auto-scaling node pool to a cluster.

        Args:
            cluster_id: Provider cluster id
            name: Pool name
            size: Droplet size (defaults to do_default_node_size)
            count: Initial node count (defaults to do_default_node_count)

        Returns:
            The provider's ``node_pool`` object
        """
        count = count or self.settings.do_default_node_count
        min_nodes, max_nodes = autoscale_bounds(count)

        response = await self._request(
            "POST",
            f"/kubernetes/clusters/{cluster_id}/node_pools",
            json={
                "size": size or self.settings.do_default_node_size,
                "name": name,
                "count": count,
                "auto_scale": True,
                "min_nodes": min_nodes,
                "max_nodes": max_nodes,
                "tags": [f"{self.settings.cluster_name_prefix}-managed"],
            },
        )
        return response.json()["node_pool"]

    async def update_node_pool(
        self,
        cluster_id: str,
        pool_id: str,
        count: int,
        size: Optional[str] = None,
    ) -> dict[str, Any]:
        """Resize a node pool; the scale ceiling follows the new count."""
        min_nodes, max_nodes = autoscale_bounds(count)
        body: dict[str, Any] = {
            "count": count,
            "auto_scale": True,
            "min_nodes": min_nodes,
            "max_nodes": max_nodes,
        }
        if size is not None:
            body["size"] = size

        response = await self._request(
            "PUT", f"/kubernetes/clusters/{cluster_id}/node_pools/{pool_id}", json=body
        )
        return response.json()["node_pool"]

    async def delete_node_pool(self, cluster_id: str, pool_id: str) -> None:
        """Delete a node pool."""
        await self._request("DELETE", f"/kubernetes/clusters/{cluster_id}/node_pools/{pool_id}")

    # =========================================================================
    # CATALOGUE
    # =========================================================================

    async def list_node_sizes(self) -> dict[str, Any]:
        """List Kubernetes options (versions, regions, node sizes)."""
        response = await self._request("GET", "/kubernetes/options")
        return response.json()["options"]

    async def list_regions(self) -> list[dict[str, Any]]:
        """List available regions that support Kubernetes."""
        response = await self._request("GET", "/regions")
        return [
            r
            for r in response.json().get("regions", [])
            if r.get("available") and "kubernetes" in r.get("features", [])
        ]

    async def list_sizes(self) -> list[PricingInfo]:
        """List droplet sizes with their pricing."""
        response = await self._request("GET", "/sizes", params={"per_page": 200})
        return [
            PricingInfo(
                slug=s["slug"],
                price_monthly=s.get("price_monthly", 0.0),
                price_hourly=s.get("price_hourly", 0.0),
                vcpus=s.get("vcpus", 0),
                memory=s.get("memory", 0),
                disk=s.get("disk", 0),
                description=s.get("description"),
            )
            for s in response.json().get("sizes", [])
        ]

    async def get_size_pricing(self, size_slug: str) -> Optional[PricingInfo]:
        """Get pricing for one droplet size, or None if unknown."""
        for size in await self.list_sizes():
            if size.slug == size_slug:
                return size
        return None


def _upstream_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    message = data.get("message") if isinstance(data, dict) else None
    return message or response.text or f"Provider returned HTTP {response.status_code}"


def get_do_client() -> DigitalOceanClient:
    """Get DigitalOcean client instance."""
    return DigitalOceanClient()
