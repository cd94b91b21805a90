"""
Lifecycle Engine - Authentication Utilities
Shared-key checks for cron and webhooks, JWT admin dependency
"""
import hmac
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from . import config

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24

# Bearer token security
security = HTTPBearer()


def _keys_match(provided: Optional[str], expected: str) -> bool:
    return hmac.compare_digest((provided or "").encode("utf-8"), expected.encode("utf-8"))


# =============================================================================
# SHARED KEYS
# =============================================================================

async def verify_cron_key(x_api_key: Optional[str] = Header(None)):
    """
    Verify the cron caller's x-api-key header.

    An unset CRON_API_KEY is a deployment error (500), not an auth failure.
    """
    if not config.CRON_API_KEY:
        raise HTTPException(status_code=500, detail="CRON_API_KEY is not configured")
    if not _keys_match(x_api_key, config.CRON_API_KEY):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return True


async def verify_webhook_secret(x_webhook_secret: Optional[str] = Header(None)):
    """Verify the shared secret sent by the SMS and short-link providers."""
    if not config.WEBHOOK_SECRET:
        raise HTTPException(status_code=500, detail="WEBHOOK_SECRET is not configured")
    if not _keys_match(x_webhook_secret, config.WEBHOOK_SECRET):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")
    return True


# =============================================================================
# ADMIN JWT
# =============================================================================

def create_access_token(user_id: str, email: str, role: str = "user") -> str:
    """Create a JWT access token with role claim."""
    expire = datetime.utcnow() + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": user_id,
        "email": email,
        "role": role,
        "exp": expire
    }
    return jwt.encode(to_encode, config.JWT_SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def require_admin(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Dependency to require an admin token.
    Returns the decoded claims.
    """
    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("sub") is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if payload.get("role") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return payload
