"""Fleet control plane exceptions.

All exceptions inherit from FleetError so the HTTP layer can map them
to status codes in one place.
"""

from __future__ import annotations


class FleetError(Exception):
    """Base exception for all fleet control plane errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class ConfigurationError(FleetError):
    """Required configuration is missing.

    Raised when the provider API token is not set. Not retryable.
    """


class ProviderError(FleetError):
    """The managed Kubernetes provider rejected or failed a call.

    upstream_status is None when the request never got a response.
    """

    status_code = 502

    def __init__(self, message: str, *, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class PreconditionError(FleetError):
    """The cluster is not in a state that allows the operation."""

    status_code = 400


class ConflictError(PreconditionError):
    """The operation would duplicate an existing cluster or upgrade."""

    status_code = 409


class NotFoundError(FleetError):
    """Organization, cluster, node pool or pricing record does not exist."""

    status_code = 404
