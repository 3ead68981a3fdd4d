from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, user_id_from_payload
from models import UserRole
from services.billing_errors import Unauthenticated

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    
    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)
    
    if not payload or not user_id_from_payload(payload):
        return None
    
    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise Unauthenticated("Not authenticated")
    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    user = await require_auth(request)
    if user.get("role") != UserRole.ROLE_ADMIN.value:
        logger.warning(f"Admin route refused for user {user_id_from_payload(user)} ({request.url.path})")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user

async def get_current_user_id(request: Request) -> str:
    """Dependency: the authenticated account id."""
    user = await require_auth(request)
    return user_id_from_payload(user)
