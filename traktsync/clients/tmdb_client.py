import logging
import httpx
from typing import Dict, List, Optional
from ..config import settings
from ..errors import UpstreamError

logger = logging.getLogger(__name__)

class TMDBClient:
    def __init__(self, api_key: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key if api_key is not None else settings.TMDB_API_KEY
        self.client = httpx.AsyncClient(
            base_url=settings.TMDB_BASE_URL.rstrip('/'),
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def close(self):
        await self.client.aclose()

    async def _get(self, endpoint: str) -> Dict:
        if not self.api_key:
            raise UpstreamError(None, f"TMDB API key is not configured, cannot fetch {endpoint}")
        try:
            resp = await self.client.get(endpoint, params={"api_key": self.api_key})
        except httpx.HTTPError as e:
            raise UpstreamError(None, f"GET {endpoint} failed: {e}") from e
        if resp.is_error:
            raise UpstreamError(resp.status_code, resp.text)
        return resp.json()

    async def fetch_season(self, show_id: int, season_number: int) -> List[Dict]:
        """
        Returns one entry per episode: {episode_number, id, name, air_date}.
        air_date is None for unaired/unknown episodes.
        """
        data = await self._get(f"/tv/{show_id}/season/{season_number}")
        episodes = []
        for ep in data.get("episodes", []):
            if ep.get("episode_number") is None or ep.get("id") is None:
                continue
            episodes.append({
                "episode_number": ep["episode_number"],
                "id": ep["id"],
                "name": ep.get("name") or "",
                "air_date": ep.get("air_date") or None,
            })
        return episodes

    async def fetch_movie(self, tmdb_id: int) -> Dict:
        return await self._get(f"/movie/{tmdb_id}")

    async def fetch_show(self, tmdb_id: int) -> Dict:
        return await self._get(f"/tv/{tmdb_id}")
