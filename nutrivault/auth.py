import hashlib
import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .database import get_db
from .models import User

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def hash_api_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer API token issued by the auth service to a user"""

    if not credentials:
        logger.error("❌ No credentials provided")
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    user = (
        db.query(User)
        .filter(User.api_token_hash == hash_api_token(credentials.credentials))
        .first()
    )
    if not user:
        logger.warning("⚠️ Authentication failed: unknown API token")
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account disabled")

    return user
