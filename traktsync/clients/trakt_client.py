import logging
import httpx
from typing import Any, Dict, List, Optional
from ..config import settings
from ..errors import AuthError, UpstreamError

logger = logging.getLogger(__name__)

class TraktClient:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(
            base_url=settings.TRAKT_BASE_URL.rstrip('/'),
            headers={
                "Content-Type": "application/json",
                "trakt-api-version": settings.TRAKT_API_VERSION,
                "trakt-api-key": settings.TRAKT_CLIENT_ID,
            },
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    async def _request(self, access_token: Optional[str], method: str, endpoint: str,
                       params: Optional[Dict[str, Any]] = None, json: Any = None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        try:
            resp = await self.client.request(method, endpoint, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise UpstreamError(None, f"{method} {endpoint} failed: {e}") from e

        if resp.status_code in (401, 403):
            raise AuthError(f"Trakt rejected credentials for {endpoint}: {resp.status_code}")
        if resp.is_error:
            raise UpstreamError(resp.status_code, resp.text)
        return resp

    async def _get(self, access_token: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = await self._request(access_token, "GET", endpoint, params=params)
        return resp.json()

    async def _get_paginated(self, access_token: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> List[Dict]:
        """
        Follows X-Pagination-Page-Count. Endpoints that don't paginate omit the
        header and are returned after a single request.
        """
        results: List[Dict] = []
        page = 1
        while True:
            page_params = dict(params or {})
            page_params.update({"page": page, "limit": settings.TRAKT_PAGE_LIMIT})
            resp = await self._request(access_token, "GET", endpoint, params=page_params)
            data = resp.json()
            if isinstance(data, list):
                results.extend(data)
            else:
                logger.warning(f"Unexpected payload type from {endpoint}: {type(data).__name__}")

            page_count = resp.headers.get("X-Pagination-Page-Count")
            if not page_count or page >= int(page_count):
                break
            page += 1

        if page > 1:
            logger.debug(f"Fetched {len(results)} items from {endpoint} across {page} pages")
        return results

    async def get_watched_movies(self, access_token: str) -> List[Dict]:
        return await self._get_paginated(access_token, "/sync/watched/movies")

    async def get_watched_shows(self, access_token: str) -> List[Dict]:
        return await self._get_paginated(access_token, "/sync/watched/shows", {"extended": "full"})

    async def get_ratings(self, access_token: str) -> List[Dict]:
        return await self._get_paginated(access_token, "/sync/ratings")

    async def get_watchlist(self, access_token: str) -> List[Dict]:
        return await self._get_paginated(access_token, "/sync/watchlist")

    async def get_favorites(self, access_token: str) -> List[Dict]:
        return await self._get_paginated(access_token, "/sync/favorites")

    async def get_user_lists(self, access_token: str, username: str) -> List[Dict]:
        return await self._get_paginated(access_token, f"/users/{username}/lists")

    async def get_list_items(self, access_token: str, username: str, list_id: str) -> List[Dict]:
        return await self._get_paginated(access_token, f"/users/{username}/lists/{list_id}/items")

    async def get_user_profile(self, access_token: str) -> Dict:
        # /users/settings wraps the profile in {"user": {...}, "account": {...}}
        data = await self._get(access_token, "/users/settings")
        user = data.get("user") if isinstance(data, dict) else None
        if not user or not user.get("username"):
            raise UpstreamError(200, "Trakt settings response has no user profile")
        return user

    async def _token_request(self, payload: Dict[str, Any]) -> Dict:
        body = {
            "client_id": settings.TRAKT_CLIENT_ID,
            "client_secret": settings.TRAKT_CLIENT_SECRET,
            "redirect_uri": settings.TRAKT_REDIRECT_URI,
            **payload,
        }
        try:
            resp = await self._request(None, "POST", "/oauth/token", json=body)
        except UpstreamError as e:
            raise AuthError(f"Trakt token request failed: {e}") from e
        return resp.json()

    async def exchange_code(self, code: str) -> Dict:
        """Returns {access_token, refresh_token, expires_in, created_at}."""
        return await self._token_request({"code": code, "grant_type": "authorization_code"})

    async def refresh_access_token(self, refresh_token: str) -> Dict:
        return await self._token_request({"refresh_token": refresh_token, "grant_type": "refresh_token"})
