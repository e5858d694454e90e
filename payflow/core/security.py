# payflow/core/security.py
from jose import JWTError, jwt
from datetime import datetime, timezone, timedelta
import hmac
import uuid
from typing import Optional, Dict, Any

from payflow.core.config import settings


class SecurityUtils:
    # ==================== JWT TOKENS ====================
    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> tuple[str, datetime, str]:
        """Create JWT access token with jti claim"""
        to_encode = data.copy()
        jti = str(uuid.uuid4())

        if expires_delta:
            expire = datetime.now(timezone.utc) + expires_delta
        else:
            expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

        to_encode.update({
            "exp": expire,
            "iat": datetime.now(timezone.utc),
            "jti": jti,
            "type": "access"
        })

        encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
        return encoded_jwt, expire, jti

    @staticmethod
    def verify_access_token(token: str) -> Optional[Dict[str, Any]]:
        """Verify JWT access token"""
        try:
            payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
            if payload.get("type") != "access":
                return None
            return payload
        except JWTError:
            return None

    # ==================== CRON SECRET ====================
    @staticmethod
    def verify_cron_secret(authorization: Optional[str]) -> bool:
        """Constant-time check of an ``Authorization: Bearer <secret>`` header"""
        if not authorization or not settings.CRON_SECRET:
            return False
        expected = f"Bearer {settings.CRON_SECRET}"
        return hmac.compare_digest(authorization.encode(), expected.encode())
