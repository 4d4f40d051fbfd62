from fastapi import Header, HTTPException

from app.core.security import internal_key_matches


async def require_internal_admin(x_internal_admin_key: str | None = Header(default=None)) -> None:
    if not internal_key_matches(x_internal_admin_key):
        raise HTTPException(status_code=403, detail="Internal admin key required")
