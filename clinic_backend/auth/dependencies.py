from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinic_backend.auth import jwt_handler
from clinic_backend.auth.identity import ADMIN_ROLE, PATIENT_ROLE, Identity
from clinic_backend.core import config

security = HTTPBearer()


def identity_from_token(token: str) -> Identity:
    try:
        payload = jwt_handler.decode_access_token(token)
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    email = (payload.get("sub") or "").strip().lower()
    if not email:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")

    role = payload.get("role") or PATIENT_ROLE
    if email in config.ADMIN_EMAILS:
        role = ADMIN_ROLE
    if role not in {ADMIN_ROLE, PATIENT_ROLE}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token role")
    return Identity(email=email, role=role)


def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Identity:
    return identity_from_token(credentials.credentials)


def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the clinic administrator can do this.",
        )
    return identity
