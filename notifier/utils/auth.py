from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Union
import hashlib
import hmac
import uuid
import jwt

from notifier.config.settings import settings


class AuthUtils:
    """JWT helpers for identities issued by the authentication collaborator"""

    @staticmethod
    def generate_access_token(
        user_id: str,
        auth_provider: Optional[str] = None,
        expires_minutes: int = 60,
    ) -> str:
        """Generate JWT access token (used by tooling and tests)"""
        now = datetime.now(timezone.utc)
        expire = now + timedelta(minutes=expires_minutes)

        payload = {
            "sub": str(user_id),  # Subject (user ID)
            "provider": auth_provider,
            "iat": now,  # Issued at
            "exp": expire,  # Expiration
            "jti": str(uuid.uuid4()),  # JWT ID for uniqueness
        }

        return jwt.encode(
            payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM
        )

    @staticmethod
    def verify_access_token(token: str) -> Optional[Dict[str, Any]]:
        """Verify and decode access token"""
        try:
            payload = jwt.decode(
                token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
            )
            return payload
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None

    @staticmethod
    def is_anonymous_provider(auth_provider: Optional[str]) -> bool:
        """Unverified identities: no provider, or one of the anonymous providers"""
        if not auth_provider:
            return True
        return auth_provider.lower() in {
            p.lower() for p in settings.ANONYMOUS_AUTH_PROVIDERS
        }

    @staticmethod
    def sign_webhook_body(body: Union[bytes, str], secret: Optional[str] = None) -> str:
        """Hex HMAC-SHA256 of a webhook body, sent as ``sha256=<hex>``"""
        if isinstance(body, str):
            body = body.encode("utf-8")
        key = (secret if secret is not None else settings.WEBHOOK_SIGNING_SECRET).encode()
        digest = hmac.new(key, body, hashlib.sha256).hexdigest()
        return f"sha256={digest}"

    @staticmethod
    def verify_webhook_signature(
        body: bytes, signature: Optional[str], secret: Optional[str] = None
    ) -> bool:
        """Constant-time check of a webhook signature header against the body"""
        key = secret if secret is not None else settings.WEBHOOK_SIGNING_SECRET
        if not signature or not key:
            return False
        expected = AuthUtils.sign_webhook_body(body, key)
        return hmac.compare_digest(expected, signature.strip())
