from __future__ import annotations

import pytest

from presence.tenancy import RequestContext, TenantRequiredError, require_tenant


def test_contexts_get_distinct_correlation_ids() -> None:
    assert RequestContext().correlation_id != RequestContext().correlation_id


def test_for_tenant_keeps_correlation_id() -> None:
    context = RequestContext(correlation_id="corr-9")

    bound = context.for_tenant("t1")

    assert bound.tenant_id == "t1"
    assert bound.correlation_id == "corr-9"
    assert bound.key() == "t1:corr-9"
    assert context.key() == "-:corr-9"
    assert bound.log_fields() == {"tenant_id": "t1", "correlation_id": "corr-9"}


def test_require_tenant_rejects_empty_context() -> None:
    with pytest.raises(TenantRequiredError):
        require_tenant(RequestContext())

    assert require_tenant(RequestContext(tenant_id="t1")) == "t1"
