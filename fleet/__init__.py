"""Fleet control plane for per-organization managed Kubernetes clusters."""

__version__ = "1.0.0"
