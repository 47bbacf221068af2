"""Shared FastAPI dependencies."""

from fastapi import Header, Request

from advisor_credits.core.exceptions import ForbiddenError, UnauthorizedError
from advisor_credits.core.security import load_session_cookie, verify_internal_token

SESSION_COOKIE_NAME = "advisor_session"
ADVISOR_ROLES = ("advisor", "admin")


async def get_current_advisor(request: Request) -> str:
    """Dependency: advisor id from the signed session cookie issued by the auth service."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    advisor_id = payload.get("user_id")
    if not advisor_id:
        raise UnauthorizedError("Invalid session")
    if payload.get("role", "advisor") not in ADVISOR_ROLES:
        raise ForbiddenError("Advisor accounts only")
    return str(advisor_id)


async def require_internal_service(x_internal_token: str | None = Header(None, alias="X-Internal-Token")) -> None:
    """Dependency: trusted backend callers only. Guards every credit-granting route."""
    if not verify_internal_token(x_internal_token):
        raise ForbiddenError("Internal endpoint")
