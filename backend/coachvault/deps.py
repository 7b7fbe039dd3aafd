from typing import Optional

from fastapi import Header, HTTPException


def current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, set by the authenticating proxy in front of the API."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(401, "Authentication required")
    return x_user_id.strip()
