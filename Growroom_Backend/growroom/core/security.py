from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from growroom.core import config

JWTError = jwt.PyJWTError


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a bearer token for service-to-service callers (e.g. the assistant tool layer)."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
