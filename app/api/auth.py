import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.domain.identity import AuthContext
from app.infra.auth import InvalidTokenError, auth_context_from_token
from app.settings import settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def _build_auth_exception(detail: str = "Invalid authentication") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> AuthContext:
    cached: AuthContext | None = getattr(request.state, "auth_context", None)
    if cached:
        return cached
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _build_auth_exception("Missing bearer token")

    app_settings = getattr(request.app.state, "app_settings", settings)
    try:
        auth = auth_context_from_token(credentials.credentials, app_settings.auth_secret_key)
    except InvalidTokenError as exc:
        logger.info("auth_token_rejected", extra={"extra": {"reason": str(exc), "path": request.url.path}})
        raise _build_auth_exception() from exc
    request.state.auth_context = auth
    return auth
