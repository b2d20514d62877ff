from typing import Optional
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from notifier.utils.auth import AuthUtils
from notifier.utils.errors import AuthenticationError


class AuthState:
    """Authentication state to be stored in request.state"""

    def __init__(
        self,
        user_id: str,
        auth_provider: Optional[str],
        is_anonymous: bool,
        is_authenticated: bool = True,
    ):
        self.user_id = user_id
        self.auth_provider = auth_provider
        self.is_anonymous = is_anonymous
        self.is_authenticated = is_authenticated


class JWTBearer(HTTPBearer):
    """Custom JWT Bearer authentication for dependency injection"""

    def __init__(self, auto_error: bool = False):
        super().__init__(auto_error=auto_error)

    async def __call__(self, request: Request) -> HTTPAuthorizationCredentials:
        """Validate JWT token from request"""
        credentials = await super().__call__(request)

        if not credentials:
            raise AuthenticationError(
                "Invalid authorization credentials", "INVALID_CREDENTIALS"
            )

        if not credentials.scheme == "Bearer":
            raise AuthenticationError("Invalid authentication scheme", "INVALID_SCHEME")

        return credentials


jwt_bearer = JWTBearer()


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(jwt_bearer),
) -> AuthState:
    """Dependency to resolve the caller from the bearer token"""
    payload = AuthUtils.verify_access_token(credentials.credentials)
    if not payload:
        raise AuthenticationError("Invalid or expired token", "INVALID_TOKEN")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Token has no subject", "INVALID_TOKEN")

    auth_provider = payload.get("provider")
    auth_state = AuthState(
        user_id=str(user_id),
        auth_provider=auth_provider,
        is_anonymous=AuthUtils.is_anonymous_provider(auth_provider),
    )
    request.state.auth = auth_state
    return auth_state
