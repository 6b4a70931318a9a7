from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi.security import HTTPBearer

from .config import settings

bearer_scheme = HTTPBearer()


def create_access_token(subject: str, role: str = "student", expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=30))
    payload = {"sub": str(subject), "role": role, "type": "access", "exp": expire}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Return the token payload, or None when the token is invalid or expired"""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except jwt.PyJWTError:
        return None
    if payload.get("type") != "access" or not payload.get("sub"):
        return None
    return payload
