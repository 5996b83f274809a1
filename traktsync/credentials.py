import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict

from .cache import utcnow
from .clients.trakt_client import TraktClient
from .config import settings
from .errors import AuthError
from .store import DELETE_FIELD, DocumentStore
from .transform import parse_timestamp

logger = logging.getLogger(__name__)

TOKEN_FIELDS = (
    "trakt_access_token",
    "trakt_refresh_token",
    "trakt_token_expires_at",
    "trakt_connected_at",
)


def _token_fields(user_id: str, tokens: Dict) -> Dict:
    try:
        expires_at = datetime.fromtimestamp(tokens["created_at"] + tokens["expires_in"], tz=timezone.utc)
        return {
            "trakt_access_token": tokens["access_token"],
            "trakt_refresh_token": tokens["refresh_token"],
            "trakt_token_expires_at": expires_at,
        }
    except (KeyError, TypeError) as e:
        raise AuthError(f"Malformed token response for user {user_id}: {e}") from e


class CredentialProvider:
    def __init__(self, store: DocumentStore, trakt: TraktClient, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.trakt = trakt
        self.clock = clock

    async def get_valid_bearer_token(self, user_id: str) -> str:
        """
        Returns the user's Trakt access token, refreshing and persisting a new
        one when the current token expires within TOKEN_REFRESH_MARGIN_SECONDS.
        """
        path = f"users/{user_id}"
        user = await self.store.get(path)
        if not user or not user.get("trakt_connected") or not user.get("trakt_access_token"):
            raise AuthError(f"Trakt not connected for user {user_id}")

        expires_at = parse_timestamp(user.get("trakt_token_expires_at"))
        margin = timedelta(seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS)
        if expires_at is None or expires_at - self.clock() >= margin:
            return user["trakt_access_token"]

        refresh_token = user.get("trakt_refresh_token")
        if not refresh_token:
            raise AuthError(f"No refresh token stored for user {user_id}")

        logger.info(f"Refreshing Trakt access token for user {user_id}")
        tokens = await self.trakt.refresh_access_token(refresh_token)
        fields = _token_fields(user_id, tokens)

        await self.store.update(path, fields)
        return fields["trakt_access_token"]

    async def connect(self, user_id: str, code: str):
        """Exchanges an OAuth authorization code and stores the tokens on the user document."""
        tokens = await self.trakt.exchange_code(code)
        fields = _token_fields(user_id, tokens)

        fields["trakt_connected_at"] = self.clock()
        fields["trakt_connected"] = True
        await self.store.set(f"users/{user_id}", fields, merge=True)
        logger.info(f"Trakt connected for user {user_id}")

    async def disconnect(self, user_id: str):
        fields = {name: DELETE_FIELD for name in TOKEN_FIELDS}
        fields["trakt_sync_status"] = DELETE_FIELD
        fields["trakt_connected"] = False
        await self.store.update(f"users/{user_id}", fields)
        logger.info(f"Trakt disconnected for user {user_id}")
