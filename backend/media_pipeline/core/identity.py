"""Authenticated identity lookup.

Authentication happens upstream; the gateway forwards the caller's opaque
user id in ``X-User-Id``.
"""

from fastapi import Header, HTTPException, status


async def get_current_user_id(x_user_id: str = Header(default="")) -> str:
    """Resolve the authenticated user id for a request."""
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authenticated user id",
        )
    return user_id
