"""Cluster lifecycle service.

Drives an organization's cluster through provisioning, scaling, HA
upgrade and deletion. The cached record under ``doks`` is a projection
of the provider: every write after a provider call is derived from what
the provider returned, never from the request alone.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fleet.background import TaskSupervisor, get_task_supervisor
from fleet.database import Database, get_database
from fleet.exceptions import (
    ConflictError,
    NotFoundError,
    PreconditionError,
    ProviderError,
)
from fleet.models import (
    ClusterRecord,
    ClusterStatus,
    ClusterStatusResponse,
    FleetCluster,
    HAUpgradeResponse,
    NodePool,
    NodePoolCreate,
    NodePoolUpdate,
    Organization,
    PricingInfo,
    ProviderOptions,
    ProvisionRequest,
)
from fleet.services.billing import CostCalculator, get_cost_calculator
from fleet.services.do_client import DigitalOceanClient, get_do_client
from fleet.services.usage import UsageTracker, get_usage_tracker
from fleet.settings import Settings, get_settings

logger = logging.getLogger(__name__)

RECONCILABLE = (ClusterStatus.PROVISIONING, ClusterStatus.RUNNING)


def pool_from_provider(pool: dict[str, Any]) -> NodePool:
    """Project a provider node pool onto the cached shape."""
    return NodePool(
        pool_id=pool["id"],
        name=pool["name"],
        size=pool["size"],
        count=pool["count"],
        auto_scale=pool.get("auto_scale", False),
        min_nodes=pool.get("min_nodes"),
        max_nodes=pool.get("max_nodes"),
    )


def provider_status(cluster: dict[str, Any], fallback: ClusterStatus) -> ClusterStatus:
    """Map the provider's cluster state onto a cached status.

    Running is only reported once the cluster has an id and an endpoint.
    """
    state = (cluster.get("status") or {}).get("state")
    if state == "running" and cluster.get("id") and cluster.get("endpoint"):
        return ClusterStatus.RUNNING
    return fallback


def _docs(pools: list[NodePool]) -> list[dict[str, Any]]:
    return [p.model_dump(mode="json", by_alias=True) for p in pools]


class ClusterService:
    """Service for cluster lifecycle operations."""

    def __init__(
        self,
        database: Database,
        client: DigitalOceanClient,
        usage: UsageTracker,
        tasks: TaskSupervisor,
        calculator: Optional[CostCalculator] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = database
        self.client = client
        self.usage = usage
        self.tasks = tasks
        self.calculator = calculator
        self.settings = settings or get_settings()

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def _get_org(self, org_id: str) -> Organization:
        org = self.db.get_organization(org_id)
        if not org:
            raise NotFoundError("Organization not found")
        return org

    def _require_cluster(self, org_id: str) -> tuple[Organization, ClusterRecord]:
        org = self._get_org(org_id)
        if not org.doks or not org.doks.cluster_id:
            raise NotFoundError("No cluster for this organization")
        return org, org.doks

    def _require_running(self, org_id: str) -> tuple[Organization, ClusterRecord]:
        org = self._get_org(org_id)
        cluster = org.doks
        if not cluster or not cluster.cluster_id or cluster.status != ClusterStatus.RUNNING:
            raise PreconditionError("Cluster not ready")
        return org, cluster

    def _find_pool(self, cluster: ClusterRecord, pool_id: str) -> NodePool:
        for pool in cluster.node_pools:
            if pool.pool_id == pool_id:
                return pool
        raise NotFoundError(f"Node pool '{pool_id}' not found")

    def _record_usage(self, org_id: str, properties: dict[str, Any]) -> None:
        if self.usage.enabled:
            self.tasks.spawn(
                self.usage.record(org_id, properties),
                name=f"usage-{properties.get('action', 'event')}-{org_id}",
            )

    # =========================================================================
    # PROVISIONING
    # =========================================================================

    async def provision(self, request: ProvisionRequest) -> ClusterRecord:
        """Provision a cluster for an organization.

        The provisioning status is written before the provider call so the
        request is visible while the create is in flight. If the create
        fails the record is left in ``error`` with the failure message.
        """
        org = self._get_org(request.org_id)
        existing = org.doks
        if existing and existing.status not in (ClusterStatus.NONE, ClusterStatus.ERROR):
            raise ConflictError(
                f"Organization already has a cluster (status: {existing.status.value})"
            )

        region = request.region or self.settings.do_default_region
        pending = ClusterRecord(
            status=ClusterStatus.PROVISIONING,
            region=region,
            ha=request.ha,
            created_at=datetime.now(timezone.utc),
        )
        self.db.update_organization(org.id, {"doks": pending.model_dump(mode="json", by_alias=True)})

        try:
            cluster = await self.client.create_cluster(
                org_id=org.id,
                org_name=org.name,
                region=region,
                node_size=request.node_size,
                node_count=request.node_count,
                ha=request.ha,
            )
            pools = [pool_from_provider(p) for p in cluster.get("node_pools", [])]
        except Exception as e:
            logger.error("Provisioning failed for org %s: %s", org.id, e)
            self.db.update_organization(
                org.id,
                {
                    "doks.status": ClusterStatus.ERROR.value,
                    "doks.provisionError": str(e) or e.__class__.__name__,
                },
            )
            raise

        status = provider_status(cluster, ClusterStatus.PROVISIONING)
        updated = self.db.update_organization(
            org.id,
            {
                "doks.clusterId": cluster["id"],
                "doks.clusterName": cluster.get("name"),
                "doks.region": cluster.get("region") or region,
                "doks.status": status.value,
                "doks.endpoint": cluster.get("endpoint") or None,
                "doks.ha": bool(cluster.get("ha", request.ha)),
                "doks.nodePools": _docs(pools),
                "doks.provisionError": None,
            },
        )
        logger.info("Cluster %s created for org %s (%s)", cluster["id"], org.id, status.value)

        self._record_usage(
            org.id,
            {
                "action": "cluster_provision",
                "region": cluster.get("region") or region,
                "nodeSize": request.node_size or self.settings.do_default_node_size,
                "nodeCount": request.node_count or self.settings.do_default_node_count,
                "ha": request.ha,
                "clusterId": cluster["id"],
            },
        )
        return updated.doks

    async def get_status(self, org_id: str) -> ClusterStatusResponse:
        """Poll the provider and reconcile the cached record."""
        org, cached = self._require_cluster(org_id)
        cluster = await self.client.get_cluster(cached.cluster_id)

        if cached.status in RECONCILABLE:
            endpoint = cluster.get("endpoint") or cached.endpoint
            status = provider_status(cluster, cached.status)
            if status == ClusterStatus.RUNNING and not endpoint:
                status = ClusterStatus.PROVISIONING
            pools = [pool_from_provider(p) for p in cluster.get("node_pools", [])]
            if (
                status != cached.status
                or endpoint != cached.endpoint
                or pools != cached.node_pools
            ):
                self.db.update_organization(
                    org.id,
                    {
                        "doks.status": status.value,
                        "doks.endpoint": endpoint,
                        "doks.nodePools": _docs(pools),
                    },
                )

        return ClusterStatusResponse(
            status=cluster.get("status") or {},
            endpoint=cluster.get("endpoint"),
            ha=bool(cluster.get("ha")),
            region=cluster.get("region"),
            version=cluster.get("version_slug") or cluster.get("version"),
            node_pools=cluster.get("node_pools", []),
            created_at=cluster.get("created_at"),
            maintenance_policy=cluster.get("maintenance_policy"),
        )

    async def get_kubeconfig(self, org_id: str) -> str:
        """Get the cluster's kubeconfig."""
        _, cluster = self._require_cluster(org_id)
        return await self.client.get_kubeconfig(cluster.cluster_id)

    # =========================================================================
    # NODE POOLS
    # =========================================================================

    def _store_pools(self, org_id: str, pools: list[NodePool]) -> None:
        self.db.update_organization(org_id, {"doks.nodePools": _docs(pools)})

    async def add_node_pool(self, org_id: str, request: NodePoolCreate) -> NodePool:
        """Add a node pool."""
        _, cluster = self._require_running(org_id)
        created = pool_from_provider(
            await self.client.add_node_pool(
                cluster.cluster_id, name=request.name, size=request.size, count=request.count
            )
        )

        current = self._get_org(org_id).doks or cluster
        pools = [p for p in current.node_pools if p.pool_id != created.pool_id]
        self._store_pools(org_id, pools + [created])

        self._record_usage(
            org_id,
            {
                "action": "node_pool_add",
                "pool": created.name,
                "size": created.size,
                "count": created.count,
            },
        )
        return created

    async def scale_node_pool(self, org_id: str, pool_id: str, request: NodePoolUpdate) -> NodePool:
        """Resize a node pool. Without a count the cached count is kept."""
        _, cluster = self._require_running(org_id)
        cached = self._find_pool(cluster, pool_id)

        updated = pool_from_provider(
            await self.client.update_node_pool(
                cluster.cluster_id,
                pool_id,
                count=request.count or cached.count,
                size=request.size,
            )
        )

        current = self._get_org(org_id).doks or cluster
        self._store_pools(
            org_id, [updated if p.pool_id == pool_id else p for p in current.node_pools]
        )
        return updated

    async def delete_node_pool(self, org_id: str, pool_id: str) -> None:
        """Delete a node pool, then re-read the remaining pools from the provider."""
        _, cluster = self._require_running(org_id)
        self._find_pool(cluster, pool_id)

        await self.client.delete_node_pool(cluster.cluster_id, pool_id)
        refreshed = await self.client.get_cluster(cluster.cluster_id)

        # A deleted pool can still be listed while its nodes drain
        pools = [
            pool_from_provider(p)
            for p in refreshed.get("node_pools", [])
            if p.get("id") != pool_id
        ]
        self._store_pools(org_id, pools)

    # =========================================================================
    # HA AND DELETION
    # =========================================================================

    async def upgrade_ha(self, org_id: str) -> HAUpgradeResponse:
        """Upgrade the control plane to HA."""
        _, cluster = self._require_running(org_id)
        if cluster.ha:
            raise ConflictError("Cluster already has HA control plane")

        upgraded = await self.client.upgrade_to_ha(cluster.cluster_id)
        if not upgraded.get("ha"):
            raise ProviderError("Provider did not confirm the HA upgrade")
        self.db.update_organization(org_id, {"doks.ha": True})

        self._record_usage(
            org_id, {"action": "ha_upgrade", "monthlyCost": self.settings.ha_monthly_cost}
        )
        return HAUpgradeResponse(ha=True, cluster=upgraded)

    async def delete_cluster(self, org_id: str, confirm: bool = False) -> None:
        """Delete the cluster and clear the organization's record.

        A failed delete leaves the record in ``deleting``; calling this
        again retries. A provider 404 counts as already deleted.
        """
        _, cluster = self._require_cluster(org_id)
        if not confirm:
            raise PreconditionError(
                "Pass confirm=true to confirm cluster deletion. This destroys all workloads."
            )

        self.db.update_organization(org_id, {"doks.status": ClusterStatus.DELETING.value})
        try:
            await self.client.delete_cluster(cluster.cluster_id)
        except ProviderError as e:
            if e.upstream_status != 404:
                logger.error("Deleting cluster %s failed: %s", cluster.cluster_id, e)
                raise
            logger.info("Cluster %s already gone at provider", cluster.cluster_id)

        self._record_usage(org_id, {"action": "cluster_delete", "clusterId": cluster.cluster_id})
        self.db.update_organization(org_id, {"doks": None})
        logger.info("Cluster %s deleted for org %s", cluster.cluster_id, org_id)

    # =========================================================================
    # FLEET AND CATALOGUE
    # =========================================================================

    async def list_fleet(self) -> list[FleetCluster]:
        """List every organization cluster with its monthly cost."""
        orgs = self.db.list_organizations_with_cluster()
        if self.calculator:
            costs = await asyncio.gather(*(self.calculator.calculate(org) for org in orgs))
            totals = [c.monthly_total for c in costs]
        else:
            totals = [0.0] * len(orgs)

        return [
            FleetCluster(
                org_id=org.id,
                org_name=org.name,
                cluster_id=org.doks.cluster_id,
                cluster_name=org.doks.cluster_name,
                region=org.doks.region,
                status=org.doks.status,
                ha=org.doks.ha,
                endpoint=org.doks.endpoint,
                node_pools=org.doks.node_pools,
                created_at=org.doks.created_at,
                monthly_total=total,
            )
            for org, total in zip(orgs, totals)
        ]

    async def get_options(self) -> ProviderOptions:
        """Get node sizes and Kubernetes regions."""
        options, regions = await asyncio.gather(
            self.client.list_node_sizes(),
            self.client.list_regions(),
        )
        return ProviderOptions(options=options, regions=regions)

    async def get_size_pricing(self, size_slug: str) -> PricingInfo:
        """Get pricing for a node size."""
        pricing = await self.client.get_size_pricing(size_slug)
        if not pricing:
            raise NotFoundError(f"No pricing found for size '{size_slug}'")
        return pricing


def get_cluster_service() -> ClusterService:
    """Get cluster service instance."""
    return ClusterService(
        get_database(),
        get_do_client(),
        get_usage_tracker(),
        get_task_supervisor(),
        calculator=get_cost_calculator(),
    )
