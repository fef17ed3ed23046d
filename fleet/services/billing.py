"""Cost breakdowns for organization clusters and the whole fleet."""

import asyncio
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from fleet.database import Database, get_database
from fleet.exceptions import NotFoundError, ProviderError
from fleet.models import (
    ClusterStatus,
    CostBreakdown,
    CostLineItem,
    FleetBilling,
    FleetSummary,
    Organization,
)
from fleet.services.do_client import get_do_client
from fleet.services.pricing import PricingCache
from fleet.settings import Settings, get_settings

logger = logging.getLogger(__name__)

NODES_ITEM = "nodes"
HA_ITEM = "ha_control_plane"


class CostCalculator:
    """Derives monthly cost from a cluster record plus cached pricing."""

    def __init__(
        self,
        pricing: PricingCache,
        markup_percent: float = 0.0,
        ha_monthly_cost: float = 40.0,
    ):
        self.pricing = pricing
        self.markup_percent = markup_percent
        self.ha_monthly_cost = ha_monthly_cost

    async def calculate(self, org: Organization) -> CostBreakdown:
        """Calculate the monthly cost of an organization's cluster.

        Clusters without a provider id, or in error, cost nothing. A pool
        whose pricing cannot be fetched is left out of the breakdown.
        """
        now = datetime.now(timezone.utc)
        cluster = org.doks
        if not cluster or not cluster.cluster_id or cluster.status == ClusterStatus.ERROR:
            return CostBreakdown(
                org_id=org.id,
                org_name=org.name,
                status=cluster.status if cluster else None,
                markup_percent=self.markup_percent,
                calculated_at=now,
            )

        items: list[CostLineItem] = []

        for pool in cluster.node_pools:
            try:
                pricing = await self.pricing.get_price(pool.size)
            except ProviderError as e:
                logger.warning(
                    "Skipping pool %s of org %s: pricing lookup failed: %s", pool.name, org.id, e
                )
                continue
            if not pricing:
                continue

            items.append(
                CostLineItem(
                    type=NODES_ITEM,
                    pool=pool.name,
                    size=pool.size,
                    count=pool.count,
                    unit_price=pricing.price_monthly,
                    monthly_total=pricing.price_monthly * pool.count,
                    vcpus=pricing.vcpus * pool.count,
                    memory_mb=pricing.memory * pool.count,
                    disk_gb=pricing.disk * pool.count,
                )
            )

        if cluster.ha:
            items.append(CostLineItem(type=HA_ITEM, monthly_total=self.ha_monthly_cost))

        subtotal = sum(item.monthly_total for item in items)
        markup = subtotal * (self.markup_percent / 100)

        return CostBreakdown(
            org_id=org.id,
            org_name=org.name,
            cluster_id=cluster.cluster_id,
            cluster_name=cluster.cluster_name,
            region=cluster.region,
            status=cluster.status,
            items=items,
            subtotal=subtotal,
            markup_percent=self.markup_percent,
            markup=markup,
            monthly_total=subtotal + markup,
            calculated_at=now,
        )


class BillingService:
    """Service for billing reads."""

    def __init__(self, database: Database, calculator: CostCalculator):
        self.db = database
        self.calculator = calculator

    async def get_org_billing(self, org_id: str) -> CostBreakdown:
        """Get the cost breakdown of one organization."""
        org = self.db.get_organization(org_id)
        if not org:
            raise NotFoundError("Organization not found")
        return await self.calculator.calculate(org)

    async def get_fleet_billing(self) -> FleetBilling:
        """Get per-organization costs and fleet totals."""
        orgs = self.db.list_organizations_with_cluster()
        results = await asyncio.gather(*(self.calculator.calculate(org) for org in orgs))

        node_items = [i for r in results for i in r.items if i.type == NODES_ITEM]
        total_memory_mb = sum(i.memory_mb or 0 for i in node_items)

        return FleetBilling(
            organizations=list(results),
            summary=FleetSummary(
                total_orgs=len(results),
                total_monthly=sum(r.monthly_total for r in results),
                total_nodes=sum(i.count or 0 for i in node_items),
                total_vcpus=sum(i.vcpus or 0 for i in node_items),
                total_memory_gb=round(total_memory_mb / 1024),
                calculated_at=datetime.now(timezone.utc),
            ),
        )


@lru_cache
def get_pricing_cache() -> PricingCache:
    """Get the process-wide pricing cache."""
    return PricingCache(get_do_client(), ttl=get_settings().pricing_cache_ttl)


def build_cost_calculator(pricing: PricingCache, settings: Optional[Settings] = None) -> CostCalculator:
    settings = settings or get_settings()
    return CostCalculator(
        pricing,
        markup_percent=settings.platform_markup_percent,
        ha_monthly_cost=settings.ha_monthly_cost,
    )


def get_cost_calculator() -> CostCalculator:
    """Get a cost calculator backed by the shared pricing cache."""
    return build_cost_calculator(get_pricing_cache())


def get_billing_service() -> BillingService:
    """Get billing service instance."""
    return BillingService(get_database(), get_cost_calculator())
