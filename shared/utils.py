from datetime import datetime
from typing import Optional, Any, List
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)

# --- Configuration ---
class Settings(BaseSettings):
    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_PUBLISHABLE_KEY: Optional[str] = None
    STRIPE_PUBLISHABLE_KEY_TEST: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Printful
    PRINTFUL_OAUTH_TOKEN: Optional[str] = Field(
        None, validation_alias=AliasChoices("PRINTFUL_OAUTH_TOKEN", "PRINTFUL_API_KEY")
    )
    PRINTFUL_STORE_ID: Optional[str] = None

    # Spotify
    SPOTIFY_CLIENT_ID: Optional[str] = None
    SPOTIFY_CLIENT_SECRET: Optional[str] = None
    SPOTIFY_ARTIST_ID: str = "0tA6AExzlXn8NLMfKNxdws"

    # Backing store
    MONGO_URL: Optional[str] = Field(
        None, validation_alias=AliasChoices("MONGO_URL", "MONGODB_URI", "DATABASE_URL")
    )
    MONGO_DB_NAME: str = "storefront"

    # Email
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: Optional[str] = None
    MERCHANT_EMAIL: Optional[str] = None

    HEALTH_CHECK_SECRET: Optional[str] = None

    # Deployment
    VERCEL_URL: Optional[str] = None
    PUBLIC_BASE_URL: Optional[str] = None
    ALLOWED_ORIGINS: str = ""
    STORE_NAME: str = "byJ. Sound Recycler"
    ARTIST_NAME: str = "byJ."

    # Checkout bounds
    MAX_ITEM_PRICE: float = 10000
    MAX_ITEM_QUANTITY: int = 10
    MAX_CART_ITEMS: int = 20
    CURRENCY: str = "usd"

    DIGITAL_ACCESS_DAYS: int = 30
    DIGITAL_PRODUCT_KEYWORD: str = "sample pack"

    DISCOGRAPHY_CACHE_TTL: float = 3600
    RATE_LIMIT_ENABLED: bool = True

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def base_url(self) -> str:
        if self.VERCEL_URL:
            return f"https://{self.VERCEL_URL}"
        if self.PUBLIC_BASE_URL:
            return self.PUBLIC_BASE_URL.rstrip("/")
        return "http://localhost:3000"

    @property
    def allowed_origins(self) -> List[str]:
        origins = [self.base_url, "http://localhost:3000"]
        for origin in self.ALLOWED_ORIGINS.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        return origins

settings = Settings()

# --- Response Models ---
class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: Optional[str] = None
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None,
        message: Optional[str] = None,
        extra: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.message = message
        self.extra = extra or {}

class ValidationException(AppException):
    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    def __init__(self, detail: str = "Forbidden", message: Optional[str] = None, extra: Optional[dict] = None):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail, message=message, extra=extra)

class UpstreamException(AppException):
    def __init__(self, detail: str = "Upstream service failed", message: Optional[str] = None, extra: Optional[dict] = None):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail, message=message, extra=extra)

class ConfigurationException(AppException):
    """Operator-facing failure: a required secret is missing or inconsistent."""
    def __init__(self, detail: str = "Server configuration error", message: Optional[str] = None):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail, message=message)


class StorageError(Exception):
    """Backing store failure. Never rendered to the client directly."""

class StorageUnavailable(StorageError):
    pass

class StorageWriteError(StorageError):
    pass


# --- Exception handlers ---
def _envelope(status_code: int, error: str, message: Optional[str] = None, extra: Optional[dict] = None, headers: Optional[dict] = None) -> JSONResponse:
    body = ErrorResponse(error=error, message=message).model_dump(exclude_none=True)
    if extra:
        body.update(extra)
    return JSONResponse(status_code=status_code, content=body, headers=headers)

async def app_exception_handler(request: Request, exc: AppException):
    return _envelope(exc.status_code, str(exc.detail), exc.message, exc.extra, exc.headers)

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _envelope(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Request validation failed", extra={"path": request.url.path})
    return _envelope(status.HTTP_400_BAD_REQUEST, "Invalid request body")

def setup_exception_handlers(app: FastAPI):
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
