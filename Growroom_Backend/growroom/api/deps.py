from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from growroom.core import security
from growroom.db.session import get_db
from growroom.drivers.base import DeviceGateway
from growroom.drivers.manager import GatewayManager
from growroom.models.user import User

# Tokens are issued elsewhere; this service only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


def get_gateway() -> DeviceGateway:
    return GatewayManager.get_gateway()


def get_current_user(
    db: Session = Depends(get_db),
    token: str = Depends(oauth2_scheme),
) -> User:
    """
    Resolves the bearer token to an active user.
    `sub` carries the user id; a username is accepted as well.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = security.decode_access_token(token)
    except security.JWTError:
        raise credentials_exception
    sub = payload.get("sub")
    if sub is None:
        raise credentials_exception

    sub = str(sub)
    if sub.isdigit():
        user = db.query(User).filter(User.id == int(sub)).first()
    else:
        user = db.query(User).filter(User.username == sub).first()
    if user is None:
        raise credentials_exception

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Inactive user"
        )
    return user
