import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from querygate.core.config import Settings, get_settings

settings_dep = Annotated[Settings, Depends(get_settings)]


# Static shared-token check; a no-op unless authentication is enabled
async def verify_token(request: Request, settings: settings_dep):
    auth = settings.authentication
    if not auth.enabled:
        return

    token = request.headers.get(auth.header_name)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {auth.header_name} header",
        )

    # Accept both "<token>" and "Bearer <token>"
    if token.lower().startswith("bearer "):
        token = token[len("bearer ") :]

    if not secrets.compare_digest(token.encode("utf-8"), auth.token.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )
