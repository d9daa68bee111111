"""Ambient tenant scope for code running on behalf of one tenant."""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

_current_tenant: ContextVar[Optional[str]] = ContextVar("crm_workflows_tenant", default=None)


def get_current_tenant() -> Optional[str]:
    return _current_tenant.get()


@contextmanager
def tenant_scope(tenant_id: Optional[str]) -> Iterator[Optional[str]]:
    """Make ``tenant_id`` the current tenant until the block exits."""
    token = _current_tenant.set(tenant_id)
    try:
        yield tenant_id
    finally:
        _current_tenant.reset(token)
