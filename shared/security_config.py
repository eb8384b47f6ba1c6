from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List, Optional
import re
import html

from shared.utils import settings

# Client-generated guest session tokens: UUIDs or similar opaque ids
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,128}$")

# Responses carrying carts, orders or tokens must never be cached by proxies
PRIVATE_PATH_PREFIXES = ("/auth", "/cart", "/orders", "/coupons")

# --- Rate Limiting ---
def identity_or_address(request: Request) -> str:
    # Guests behind one NAT would share a bucket; their session token separates them
    session_id = request.headers.get("X-Session-ID")
    if session_id and is_valid_session_id(session_id):
        return f"session:{session_id}"
    return get_remote_address(request)

limiter = Limiter(
    key_func=identity_or_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    enabled=settings.RATE_LIMIT_ENABLED,
)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:; object-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if request.url.path.startswith(PRIVATE_PATH_PREFIXES):
            response.headers["Cache-Control"] = "no-store"

        return response

# --- Input Sanitization ---
def sanitize_input(text: Optional[str]) -> Optional[str]:
    """Trim and HTML-escape free text (names, notes, descriptions). Non-strings pass through."""
    if not isinstance(text, str):
        return text
    return html.escape(text.strip())

def sanitize_list(values: Optional[List[str]]) -> Optional[List[str]]:
    # Ingredient and tag lists: sanitized, blanks and repeats dropped, order kept
    if values is None:
        return values
    seen = []
    for value in (sanitize_input(v) for v in values):
        if value and value not in seen:
            seen.append(value)
    return seen

def is_valid_session_id(session_id: str) -> bool:
    return bool(SESSION_ID_PATTERN.match(session_id))

def validate_password_strength(password: str) -> bool:
    """
    Validate password strength:
    - Min 8 chars
    - At least one uppercase
    - At least one lowercase
    - At least one digit
    """
    if len(password) < 8:
        return False
    if not re.search(r"[A-Z]", password):
        return False
    if not re.search(r"[a-z]", password):
        return False
    if not re.search(r"\d", password):
        return False
    return True
