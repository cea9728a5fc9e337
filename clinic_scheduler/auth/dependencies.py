from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinic_scheduler.auth import jwt_handler
from clinic_scheduler.models.user import ROLE_ADMIN, ROLE_DOCTOR, ROLE_PATIENT

security = HTTPBearer()

KNOWN_ROLES = {ROLE_PATIENT, ROLE_DOCTOR, ROLE_ADMIN}


@dataclass(frozen=True)
class Principal:
    """The caller as asserted by the identity provider. Trusted as given."""

    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_doctor(self) -> bool:
        return self.role == ROLE_DOCTOR

    @property
    def is_patient(self) -> bool:
        return self.role == ROLE_PATIENT


def principal_from_token(token: str) -> Principal:
    try:
        payload = jwt_handler.decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject:
        raise HTTPException(status_code=401, detail="Invalid token subject")
    if role not in KNOWN_ROLES:
        raise HTTPException(status_code=401, detail="Invalid token role")

    try:
        user_id = int(subject)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=401, detail="Invalid token subject") from exc

    return Principal(user_id=user_id, role=role)


def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    return principal_from_token(credentials.credentials)
