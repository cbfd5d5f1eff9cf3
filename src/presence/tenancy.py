"""Request-scoped tenant context."""

from __future__ import annotations

import uuid

from msgspec import Struct, field


def new_correlation_id() -> str:
    return str(uuid.uuid4())


class RequestContext(Struct, frozen=True):
    """Tenant identifier and correlation id carried through every operation.

    ``tenant_id`` is the identifier of a persisted :class:`~presence.models.Tenant`;
    provisioning runs before such an identifier exists and therefore uses a
    context with an empty ``tenant_id``.
    """

    tenant_id: str = ""
    correlation_id: str = field(default_factory=new_correlation_id)

    def for_tenant(self, tenant_id: str) -> "RequestContext":
        """Return a copy of this context bound to ``tenant_id``."""

        return RequestContext(tenant_id=tenant_id, correlation_id=self.correlation_id)

    def log_fields(self) -> dict[str, str]:
        return {"tenant_id": self.tenant_id, "correlation_id": self.correlation_id}

    def key(self) -> str:
        return f"{self.tenant_id or '-'}:{self.correlation_id}"


class TenantRequiredError(ValueError):
    """Raised when a tenant scoped operation receives a context without a tenant."""


def require_tenant(context: RequestContext) -> str:
    if not context.tenant_id:
        raise TenantRequiredError("tenant id required for tenant scoped access")
    return context.tenant_id


__all__ = ["RequestContext", "TenantRequiredError", "new_correlation_id", "require_tenant"]
