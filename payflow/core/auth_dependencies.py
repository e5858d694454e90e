from fastapi import Depends, HTTPException, status, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional

from payflow.core.database import get_db
from payflow.core.security import SecurityUtils
from payflow.core.constants import RoleEnum
from payflow.models.transaction import User, JWTBlacklist

security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = SecurityUtils.verify_access_token(credentials.credentials)
    user = None
    if payload and payload.get("sub"):
        revoked = db.query(JWTBlacklist.id).filter(JWTBlacklist.jti == payload.get("jti")).first()
        if not revoked:
            user = db.query(User).filter(
                User.id == int(payload["sub"]),
                User.is_active == True
            ).first()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user


def require_role(required_roles: list[str]):
    def role_checker(current_user: User = Depends(get_current_user)):
        if current_user.role.value not in required_roles and current_user.role != RoleEnum.ADMIN:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return current_user

    return role_checker


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    if not SecurityUtils.verify_cron_secret(authorization):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )
