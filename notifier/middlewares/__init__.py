from .request_id_middleware import *
from .auth_middleware import *
from .rate_limit_middleware import *

__all__ = [
    "RequestIDMiddleware",
    "AuthState",
    "get_current_user",
    "enforce_rate_limit",
    "get_client_ip",
]
