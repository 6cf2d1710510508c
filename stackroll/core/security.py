import hashlib
import hmac

from fastapi import Depends, HTTPException, Request, status

from stackroll.core.config import Settings, get_settings


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


async def require_operator(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> str:
    if not settings.admin_api_key_sha256:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="operator API key is not configured",
        )

    api_key = request.headers.get(settings.api_key_header)
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"operator auth requires {settings.api_key_header}",
        )

    if not hmac.compare_digest(settings.admin_api_key_sha256.lower(), hash_api_key(api_key)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid operator credentials")

    return "operator"
