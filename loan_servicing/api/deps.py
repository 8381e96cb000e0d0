"""
Request dependencies shared by the routers
"""

from typing import Optional

from fastapi import Header, Request

from ..engine import LoanServicingEngine
from ..exceptions import InvalidInputError
from ..tenancy import TENANT_HEADER, validate_tenant_id


def get_engine(request: Request) -> LoanServicingEngine:
    return request.app.state.engine


def get_tenant_id(x_tenant_id: Optional[str] = Header(None, alias=TENANT_HEADER)) -> str:
    """Tenant resolved by the host from the X-Tenant-ID header"""
    if not x_tenant_id:
        raise InvalidInputError(f"{TENANT_HEADER} header is required", {"header": TENANT_HEADER})
    return validate_tenant_id(x_tenant_id.strip())
