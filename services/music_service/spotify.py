import base64
import logging
import random
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from shared.utils import settings

logger = logging.getLogger("music-service")

SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_API_URL = "https://api.spotify.com/v1"
MARKET = "US"


class SpotifyError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SpotifyNotFound(SpotifyError):
    def __init__(self, message: str):
        super().__init__(message, status_code=404)


def basic_credentials(client_id: Optional[str], client_secret: Optional[str]) -> str:
    raw = f"{client_id}:{client_secret}".encode()
    return "Basic " + base64.b64encode(raw).decode()


def shape_track(track: dict) -> dict:
    album = track.get("album") or {}
    images = album.get("images") or []
    external_urls = track.get("external_urls") or {}
    return {
        "id": track.get("id"),
        "name": track.get("name"),
        "artists": ", ".join(artist.get("name", "") for artist in track.get("artists") or []),
        "album": album.get("name"),
        "albumImage": images[0].get("url") if images else None,
        "preview_url": track.get("preview_url"),
        "external_urls": external_urls,
        "uri": track.get("uri"),
        "spotify_url": external_urls.get("spotify"),
    }


class SpotifyClient:
    """Client-credentials Spotify Web API client scoped to one artist."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        artist_id: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        choice: Callable[[Sequence[Any]], Any] = random.choice,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.artist_id = artist_id
        self.transport = transport
        self.choice = choice

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=15.0)

    async def get_access_token(self, client: httpx.AsyncClient) -> str:
        try:
            response = await client.post(
                SPOTIFY_TOKEN_URL,
                data={"grant_type": "client_credentials"},
                headers={"Authorization": basic_credentials(self.client_id, self.client_secret)},
            )
        except httpx.RequestError as e:
            raise SpotifyError(f"Spotify accounts service unreachable: {e}") from e

        token = None
        if response.is_success:
            token = (response.json() or {}).get("access_token")
        if not token:
            logger.error("Spotify token exchange failed", extra={"status_code": response.status_code})
            raise SpotifyError("Failed to get access token", status_code=response.status_code)
        return token

    async def _get(self, client: httpx.AsyncClient, token: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> dict:
        try:
            response = await client.get(
                f"{SPOTIFY_API_URL}{endpoint}",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.RequestError as e:
            raise SpotifyError(f"Spotify API unreachable: {e}") from e

        if response.is_error:
            logger.error("Spotify API Error", extra={"path": endpoint, "status_code": response.status_code})
            raise SpotifyError(f"Spotify API error ({response.status_code})", status_code=response.status_code)
        return response.json()

    async def _artist_albums(self, client: httpx.AsyncClient, token: str, include_groups: str, limit: int, market: Optional[str] = MARKET) -> dict:
        params: Dict[str, Any] = {"include_groups": include_groups, "limit": limit}
        if market:
            params["market"] = market
        return await self._get(client, token, f"/artists/{self.artist_id}/albums", params)

    async def get_discography(self, limit: int = 6) -> dict:
        async with self._client() as client:
            token = await self.get_access_token(client)
            return await self._artist_albums(client, token, "album,single", limit)

    async def get_latest_release(self) -> Optional[dict]:
        async with self._client() as client:
            token = await self.get_access_token(client)
            albums = await self._artist_albums(client, token, "album,single", 1, market=None)
        items = albums.get("items") or []
        return items[0] if items else None

    async def get_random_track(self) -> dict:
        async with self._client() as client:
            token = await self.get_access_token(client)

            albums: List[dict] = (await self._artist_albums(client, token, "album,single,ep", 50)).get("items") or []
            if not albums:
                raise SpotifyNotFound("No albums found")
            album = self.choice(albums)

            tracks_data = await self._get(client, token, f"/albums/{album['id']}/tracks", {"limit": 50, "market": MARKET})
            tracks: List[dict] = tracks_data.get("items") or []
            if not tracks:
                raise SpotifyNotFound("No tracks found in album")
            track = self.choice(tracks)

            details = await self._get(client, token, f"/tracks/{track['id']}", {"market": MARKET})
        return shape_track(details)


def get_spotify_client() -> SpotifyClient:
    return SpotifyClient(settings.SPOTIFY_CLIENT_ID, settings.SPOTIFY_CLIENT_SECRET, settings.SPOTIFY_ARTIST_ID)
