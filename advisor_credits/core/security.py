import hashlib
import hmac
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from advisor_credits.core.config import get_settings

SESSION_MAX_AGE_SECONDS = 7 * 24 * 3600


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="advisor-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    """Sign a session payload (issued by the auth service; used here by tests and tooling)."""
    return get_session_serializer().dumps(payload)


def load_session_cookie(cookie_value: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(cookie_value, max_age=SESSION_MAX_AGE_SECONDS)
    except (BadSignature, SignatureExpired):
        return None


def verify_razorpay_webhook(payload: bytes, signature: str, secret: str) -> bool:
    expected = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, signature)


def verify_internal_token(token: str | None) -> bool:
    """Constant-time check of the shared service token; an unset token rejects everything."""
    expected = get_settings().internal_service_token
    if not expected or not token:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), token.encode("utf-8"))
