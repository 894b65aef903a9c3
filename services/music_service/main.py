from fastapi import FastAPI, APIRouter, Depends, Query, Request, Response, status
from typing import Optional

from shared.cache import TTLCache
from shared.utils import settings, AppException, UpstreamException, setup_exception_handlers
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import (
    setup_rate_limiting, SecurityHeadersMiddleware, CORSPolicyMiddleware, limiter
)

from services.music_service.spotify import SpotifyClient, SpotifyError, SpotifyNotFound, get_spotify_client
from services.music_service.schemas import RandomTrackResponse

# Setup Logging
logger = setup_logging("music-service")

DEFAULT_DISCOGRAPHY_LIMIT = 6
DISCOGRAPHY_CACHE_CONTROL = "public, s-maxage=3600, stale-while-revalidate=7200"

# Keyed by page size; lives as long as the process
discography_cache = TTLCache(settings.DISCOGRAPHY_CACHE_TTL)

router = APIRouter()

def parse_limit(raw: Optional[str]) -> int:
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_DISCOGRAPHY_LIMIT
    return limit if limit > 0 else DEFAULT_DISCOGRAPHY_LIMIT

@router.get("/api/spotify-discography")
@limiter.limit("60/minute")
async def spotify_discography(
    request: Request,
    response: Response,
    limit: Optional[str] = Query(None),
    spotify: SpotifyClient = Depends(get_spotify_client),
):
    page_size = parse_limit(limit)
    try:
        albums = await discography_cache.get_or_load(page_size, lambda: spotify.get_discography(page_size))
    except SpotifyError:
        logger.error("Error fetching discography", exc_info=True)
        raise UpstreamException("Failed to fetch discography")

    response.headers["Cache-Control"] = DISCOGRAPHY_CACHE_CONTROL
    return albums

@router.get("/api/spotify-latest")
async def spotify_latest(spotify: SpotifyClient = Depends(get_spotify_client)):
    try:
        return await spotify.get_latest_release()
    except SpotifyError:
        logger.error("Error fetching latest release", exc_info=True)
        raise UpstreamException("Failed to fetch latest release")

@router.get("/api/spotify-random-track", response_model=RandomTrackResponse)
async def spotify_random_track(spotify: SpotifyClient = Depends(get_spotify_client)):
    try:
        track = await spotify.get_random_track()
    except SpotifyNotFound as e:
        raise AppException(status.HTTP_404_NOT_FOUND, str(e))
    except SpotifyError as e:
        logger.error("Error fetching random track", exc_info=True)
        raise UpstreamException("Failed to fetch random track", message=str(e))

    logger.info("Random track selected", extra={"target": track.get("id")})
    return RandomTrackResponse(**track)


app = FastAPI(title="Music Service")

# Security Setup
setup_rate_limiting(app)
setup_exception_handlers(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="music-service")
app.add_middleware(CORSPolicyMiddleware)

app.include_router(router)
