"""Pydantic models for cluster state, billing, build events and API payloads."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys (stored and returned)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# ENUMS
# =============================================================================


class ClusterStatus(str, Enum):
    """Cached status of an organization's cluster."""

    NONE = "none"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    ERROR = "error"
    DELETING = "deleting"


class GitProvider(str, Enum):
    """Source-control providers that accept backup commit statuses."""

    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"


# =============================================================================
# CLUSTER MODELS
# =============================================================================


class NodePool(CamelModel):
    """Cached view of one provider node pool."""

    pool_id: str
    name: str
    size: str
    count: int
    auto_scale: bool = False
    min_nodes: Optional[int] = None
    max_nodes: Optional[int] = None


class ClusterRecord(CamelModel):
    """Cluster record embedded in an organization (stored under ``doks``)."""

    cluster_id: Optional[str] = None
    cluster_name: Optional[str] = None
    status: ClusterStatus = ClusterStatus.NONE
    region: Optional[str] = None
    ha: bool = False
    endpoint: Optional[str] = None
    created_at: Optional[datetime] = None
    provision_error: Optional[str] = None
    node_pools: list[NodePool] = Field(default_factory=list)


class Organization(CamelModel):
    """Organization with its embedded cluster record."""

    id: str
    name: str
    doks: Optional[ClusterRecord] = None
    created_at: datetime
    updated_at: datetime


class ProvisionRequest(CamelModel):
    """Request to provision a cluster for an organization."""

    org_id: str = Field(..., min_length=1)
    region: Optional[str] = None
    node_size: Optional[str] = None
    node_count: Optional[int] = Field(default=None, ge=1, le=100)
    ha: bool = False


class NodePoolCreate(CamelModel):
    """Request to add a node pool."""

    name: str = Field(..., min_length=1, max_length=255)
    size: Optional[str] = None
    count: Optional[int] = Field(default=None, ge=1, le=100)


class NodePoolUpdate(CamelModel):
    """Request to resize a node pool."""

    count: Optional[int] = Field(default=None, ge=1, le=100)
    size: Optional[str] = None


class ClusterStatusResponse(CamelModel):
    """Live cluster view returned by a status poll."""

    status: dict[str, Any] = Field(default_factory=dict)
    endpoint: Optional[str] = None
    ha: bool = False
    region: Optional[str] = None
    version: Optional[str] = None
    node_pools: list[dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[str] = None
    maintenance_policy: Optional[dict[str, Any]] = None


class HAUpgradeResponse(CamelModel):
    """Response after upgrading the control plane to HA."""

    ha: bool
    cluster: dict[str, Any]


class ProviderOptions(CamelModel):
    """Node sizes and Kubernetes-capable regions offered by the provider."""

    options: dict[str, Any]
    regions: list[dict[str, Any]]


class FleetCluster(CamelModel):
    """One organization's cluster in the fleet listing."""

    org_id: str
    org_name: str
    cluster_id: Optional[str] = None
    cluster_name: Optional[str] = None
    region: Optional[str] = None
    status: ClusterStatus
    ha: bool = False
    endpoint: Optional[str] = None
    node_pools: list[NodePool] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    monthly_total: float = 0.0


# =============================================================================
# BILLING MODELS
# =============================================================================


class PricingInfo(CamelModel):
    """Per-unit pricing and capacity of a provider node size."""

    slug: str
    price_monthly: float
    price_hourly: float = 0.0
    vcpus: int = 0
    memory: int = 0  # MB
    disk: int = 0  # GB
    description: Optional[str] = None


class CostLineItem(CamelModel):
    """One line of a cost breakdown."""

    type: str
    pool: Optional[str] = None
    size: Optional[str] = None
    count: Optional[int] = None
    unit_price: Optional[float] = None
    monthly_total: float
    vcpus: Optional[int] = None
    memory_mb: Optional[int] = None
    disk_gb: Optional[int] = None


class CostBreakdown(CamelModel):
    """Monthly cost of one organization's cluster. Never persisted."""

    org_id: Optional[str] = None
    org_name: Optional[str] = None
    cluster_id: Optional[str] = None
    cluster_name: Optional[str] = None
    region: Optional[str] = None
    status: Optional[ClusterStatus] = None
    items: list[CostLineItem] = Field(default_factory=list)
    subtotal: float = 0.0
    markup_percent: float = 0.0
    markup: float = 0.0
    monthly_total: float = 0.0
    currency: str = "USD"
    calculated_at: datetime


class FleetSummary(CamelModel):
    """Totals across every organization that has a cluster."""

    total_orgs: int
    total_monthly: float
    total_nodes: int
    total_vcpus: int
    total_memory_gb: int
    currency: str = "USD"
    calculated_at: datetime


class FleetBilling(CamelModel):
    """Fleet-wide billing: per-organization breakdowns plus a summary."""

    organizations: list[CostBreakdown]
    summary: FleetSummary


# =============================================================================
# BUILD MONITOR MODELS
# =============================================================================


class BuildEvent(CamelModel):
    """A pipeline event delivered by the cluster event stream."""

    reason: str
    involved_object_name: str
    timestamp: Optional[datetime] = None


class GitCredentialParams(CamelModel):
    """Git provider credentials extracted from pipeline run params."""

    provider: GitProvider
    token: str
    revision: str = ""
    repo_url: str = ""
    repo_name: str = ""
    project_id: str = ""


class WatcherStatus(CamelModel):
    """Whether the build event watcher is running."""

    running: bool
