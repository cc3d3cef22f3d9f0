from __future__ import annotations

from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials

from affiliate_ledger.core.security import ServicePrincipal, bearer_scheme, decode_service_token


async def require_service(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> ServicePrincipal:
    """Internal callers (payment flow, intake flow, cron, admin tools) authenticate with a service JWT."""
    return decode_service_token(credentials.credentials)


def ensure_clinic_access(principal: ServicePrincipal, clinic_id: UUID | None) -> None:
    """A clinic-scoped token may only touch its own clinic."""
    if principal.clinic_id is None:
        return
    if clinic_id is None or principal.clinic_id != clinic_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "clinic_forbidden", "message": "Token is not valid for this clinic."},
        )
