"""Cluster endpoints."""

from fastapi import APIRouter, Depends, Response

from fleet.models import (
    ClusterRecord,
    ClusterStatusResponse,
    FleetCluster,
    HAUpgradeResponse,
    NodePool,
    NodePoolCreate,
    NodePoolUpdate,
    PricingInfo,
    ProviderOptions,
    ProvisionRequest,
)
from fleet.services.cluster import ClusterService, get_cluster_service

router = APIRouter(prefix="/v1/cluster/doks", tags=["Clusters"])


@router.get("/fleet", response_model=list[FleetCluster])
async def list_fleet(
    service: ClusterService = Depends(get_cluster_service),
) -> list[FleetCluster]:
    """List every organization's cluster with its monthly cost."""
    return await service.list_fleet()


@router.get("/options", response_model=ProviderOptions)
async def get_options(
    service: ClusterService = Depends(get_cluster_service),
) -> ProviderOptions:
    """Get available node sizes and regions."""
    return await service.get_options()


@router.get("/pricing/{size_slug}", response_model=PricingInfo)
async def get_pricing(
    size_slug: str,
    service: ClusterService = Depends(get_cluster_service),
) -> PricingInfo:
    """Get pricing for a node size."""
    return await service.get_size_pricing(size_slug)


@router.post("/provision", response_model=ClusterRecord, status_code=201)
async def provision(
    request: ProvisionRequest,
    service: ClusterService = Depends(get_cluster_service),
) -> ClusterRecord:
    """Provision a cluster for an organization."""
    return await service.provision(request)


@router.get("/{org_id}/status", response_model=ClusterStatusResponse)
async def get_status(
    org_id: str,
    service: ClusterService = Depends(get_cluster_service),
) -> ClusterStatusResponse:
    """Get live cluster status."""
    return await service.get_status(org_id)


@router.get("/{org_id}/kubeconfig")
async def get_kubeconfig(
    org_id: str,
    service: ClusterService = Depends(get_cluster_service),
) -> Response:
    """Get the cluster kubeconfig."""
    kubeconfig = await service.get_kubeconfig(org_id)
    return Response(content=kubeconfig, media_type="text/yaml")


@router.post("/{org_id}/node-pools", response_model=NodePool, status_code=201)
async def add_node_pool(
    org_id: str,
    request: NodePoolCreate,
    service: ClusterService = Depends(get_cluster_service),
) -> NodePool:
    """Add a node pool."""
    return await service.add_node_pool(org_id, request)


@router.put("/{org_id}/node-pools/{pool_id}", response_model=NodePool)
async def scale_node_pool(
    org_id: str,
    pool_id: str,
    request: NodePoolUpdate,
    service: ClusterService = Depends(get_cluster_service),
) -> NodePool:
    """Resize a node pool."""
    return await service.scale_node_pool(org_id, pool_id, request)


@router.delete("/{org_id}/node-pools/{pool_id}", status_code=204)
async def delete_node_pool(
    org_id: str,
    pool_id: str,
    service: ClusterService = Depends(get_cluster_service),
) -> Response:
    """Delete a node pool."""
    await service.delete_node_pool(org_id, pool_id)
    return Response(status_code=204)


@router.post("/{org_id}/upgrade-ha", response_model=HAUpgradeResponse)
async def upgrade_ha(
    org_id: str,
    service: ClusterService = Depends(get_cluster_service),
) -> HAUpgradeResponse:
    """Upgrade the control plane to HA."""
    return await service.upgrade_ha(org_id)


@router.delete("/{org_id}", status_code=204)
async def delete_cluster(
    org_id: str,
    confirm: bool = False,
    service: ClusterService = Depends(get_cluster_service),
) -> Response:
    """Delete the cluster. Requires confirm=true."""
    await service.delete_cluster(org_id, confirm=confirm)
    return Response(status_code=204)
