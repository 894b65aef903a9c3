import hmac
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Depends, Header, status

from shared.utils import (
    settings, AppException, UnauthorizedException, StorageError, HealthResponse, setup_exception_handlers
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, CORSPolicyMiddleware

from services.checkout_service.database import OrderStore, get_order_store, NOT_CONFIGURED_MESSAGE
from services.checkout_service.main import router as checkout_router, ensure_store_indexes
from services.fulfillment_service.main import router as fulfillment_router
from services.music_service.main import router as music_router

VERSION = "1.0.0"

# Setup Logging
logger = setup_logging("api-gateway")

app = FastAPI(title="Storefront API")

# Security Setup
setup_rate_limiting(app)
setup_exception_handlers(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="api-gateway")
app.add_middleware(CORSPolicyMiddleware)

app.include_router(checkout_router)
app.include_router(fulfillment_router)
app.include_router(music_router)

@app.on_event("startup")
async def startup_db_client():
    await ensure_store_indexes()

@app.on_event("shutdown")
async def shutdown_db_client():
    get_order_store().close()

# --- Health ---
def verify_health_token(authorization: Optional[str] = Header(None)):
    secret = settings.HEALTH_CHECK_SECRET
    # Unset secret locks the endpoint
    if not secret or not authorization:
        raise UnauthorizedException()
    if not hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode()):
        raise UnauthorizedException()

@app.get("/api/health", dependencies=[Depends(verify_health_token)])
async def api_health(store: OrderStore = Depends(get_order_store)):
    if not store.configured:
        logger.error("Health check failed: backing store not configured")
        raise AppException(status.HTTP_500_INTERNAL_SERVER_ERROR, NOT_CONFIGURED_MESSAGE)

    try:
        await store.ping()
    except StorageError as e:
        logger.error("Health check failed", exc_info=True)
        raise AppException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Health check failed", message=str(e))

    return {"status": "ok", "timestamp": datetime.utcnow().isoformat()}

@app.get("/health", response_model=HealthResponse)
async def health_check(store: OrderStore = Depends(get_order_store)):
    return HealthResponse(
        service="api-gateway",
        status="healthy",
        timestamp=datetime.utcnow(),
        version=VERSION,
        database="configured" if store.configured else "not configured",
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("services.api_gateway.main:app", host="0.0.0.0", port=8000)
