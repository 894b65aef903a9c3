from pydantic import BaseModel
from typing import Optional, Dict

class RandomTrackResponse(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    artists: str = ""
    album: Optional[str] = None
    albumImage: Optional[str] = None
    preview_url: Optional[str] = None
    external_urls: Dict[str, str] = {}
    uri: Optional[str] = None
    spotify_url: Optional[str] = None
