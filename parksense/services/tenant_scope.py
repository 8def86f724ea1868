# parksense/services/tenant_scope.py
"""
Tenant scope for API requests.

Authentication happens upstream; the gateway forwards the authorized tenant
in X-Tenant-Id and the acting operator in X-User-Id. Every query in the
routers is filtered by scope.tenant_id.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException


@dataclass(frozen=True)
class TenantScope:
    tenant_id: str
    user_id: Optional[str] = None


def get_tenant_scope(
    x_tenant_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> TenantScope:
    """FastAPI dependency — 400 when no tenant is selected."""
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="No tenant selected")
    return TenantScope(tenant_id=tenant_id, user_id=(x_user_id or "").strip() or None)
