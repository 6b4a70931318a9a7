from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials

from ..core.security import bearer_scheme, verify_token

INSTRUCTOR_ROLES = ("instructor", "admin")


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str

    @property
    def is_instructor(self) -> bool:
        return self.role in INSTRUCTOR_ROLES


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> CurrentUser:
    payload = verify_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return CurrentUser(id=str(payload["sub"]), role=payload.get("role", "student"))


def require_instructor(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    if not current_user.is_instructor:
        raise HTTPException(
            status_code=403, detail="The user doesn't have enough privileges"
        )
    return current_user
