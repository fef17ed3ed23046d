"""Billing endpoints."""

from fastapi import APIRouter, Depends

from fleet.models import CostBreakdown, FleetBilling
from fleet.services.billing import BillingService, get_billing_service

router = APIRouter(prefix="/v1/billing", tags=["Billing"])


@router.get("/fleet", response_model=FleetBilling)
async def get_fleet_billing(
    service: BillingService = Depends(get_billing_service),
) -> FleetBilling:
    """Get billing for all clusters."""
    return await service.get_fleet_billing()


@router.get("/{org_id}", response_model=CostBreakdown)
async def get_org_billing(
    org_id: str,
    service: BillingService = Depends(get_billing_service),
) -> CostBreakdown:
    """Get the cost breakdown of one organization's cluster."""
    return await service.get_org_billing(org_id)
