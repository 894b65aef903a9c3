from fastapi import Request, Response, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import Any, Iterable, List, Optional

from shared.utils import settings

# --- Rate Limiting ---
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response

# --- CORS ---
# Routes that only answer browsers on our own origins
RESTRICTED_ROUTES = {
    "/api/create-checkout-session": ("POST, OPTIONS", "Content-Type"),
    "/api/stripe-publishable-key": ("GET, OPTIONS", "Content-Type"),
    "/api/health": ("GET, OPTIONS", "Content-Type, Authorization"),
}
# Called server-to-server by the payment provider
NO_CORS_ROUTES = {"/api/stripe-webhook"}

def cors_headers(path: str, origin: Optional[str], allowed_origins: Iterable[str]) -> dict:
    if path in NO_CORS_ROUTES:
        return {}
    if path in RESTRICTED_ROUTES:
        methods, allow_headers = RESTRICTED_ROUTES[path]
        headers = {
            "Access-Control-Allow-Methods": methods,
            "Access-Control-Allow-Headers": allow_headers,
        }
        # Exact match only
        if origin and origin in list(allowed_origins):
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
        return headers
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
    }

class CORSPolicyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        path = request.url.path.rstrip("/") or "/"
        headers = cors_headers(path, request.headers.get("origin"), settings.allowed_origins)

        if request.method == "OPTIONS":
            return Response(status_code=200, headers=headers)

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response

# --- Input Sanitization ---
def sanitize_text(value: Any, max_length: int, default: Optional[str] = None) -> Optional[str]:
    """
    Coerce client text to a trimmed string capped at max_length.
    Empty or missing values fall back to default.
    """
    if value is None:
        return default
    clean_text = str(value).strip()
    if not clean_text:
        return default
    return clean_text[:max_length]

def filter_image_urls(images: Any, limit: int = 8) -> List[str]:
    """Keep only http(s) image URLs."""
    if not isinstance(images, list):
        return []
    urls = [img for img in images if isinstance(img, str) and img.startswith(("http://", "https://"))]
    return urls[:limit]
