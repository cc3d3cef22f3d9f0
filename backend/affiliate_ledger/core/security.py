from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from jose import JWTError, jwt

from affiliate_ledger.core.config import settings

bearer_scheme = HTTPBearer(auto_error=True)


@dataclass(frozen=True)
class ServicePrincipal:
    service: str
    # None = token may act on any clinic
    clinic_id: uuid.UUID | None = None


def _normalize_token(token: str) -> str:
    """
    Make token decoding resilient to common copy-paste issues:
    - Leading/trailing whitespace/newlines
    - Surrounding quotes
    - Accidentally including the 'Bearer ' prefix in the token field
    """
    if token is None:
        return ""

    t = token.strip()

    # remove surrounding quotes if present
    if (t.startswith('"') and t.endswith('"')) or (t.startswith("'") and t.endswith("'")):
        t = t[1:-1].strip()

    # remove accidental bearer prefix
    if t.lower().startswith("bearer "):
        t = t[7:].strip()

    return t


def create_service_token(
    service: str,
    clinic_id: uuid.UUID | None = None,
    expires_minutes: Optional[int] = None,
) -> str:
    now = datetime.now(timezone.utc)
    expire_dt = now + timedelta(minutes=expires_minutes or settings.SERVICE_TOKEN_EXPIRE_MINUTES)

    to_encode: dict[str, Any] = {
        "sub": str(service),
        "exp": int(expire_dt.timestamp()),
        "iat": int(now.timestamp()),
    }
    if clinic_id is not None:
        to_encode["clinic_id"] = str(clinic_id)

    return jwt.encode(
        to_encode,
        settings.SERVICE_TOKEN_SECRET,
        algorithm=settings.SERVICE_TOKEN_ALGORITHM,
    )


def decode_service_token(token: str) -> ServicePrincipal:
    token = _normalize_token(token)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    try:
        payload = jwt.decode(
            token,
            settings.SERVICE_TOKEN_SECRET,
            algorithms=[settings.SERVICE_TOKEN_ALGORITHM],
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError:
        # Includes expired signature, bad format, bad signature, wrong algorithm, etc.
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    raw_clinic = payload.get("clinic_id")
    try:
        clinic_id = uuid.UUID(str(raw_clinic)) if raw_clinic else None
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    return ServicePrincipal(service=str(sub), clinic_id=clinic_id)
