import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Set

from .cache import utcnow
from .config import settings
from .credentials import CredentialProvider
from .engine import SyncEngine, user_path
from .errors import AuthError, TraktSyncError
from .models import SyncStatus
from .store import DocumentStore
from .transform import parse_timestamp

logger = logging.getLogger(__name__)


class TriggerRejected(TraktSyncError):
    def __init__(self, status_code: int, detail: str, sync_status: Optional[Dict] = None):
        self.status_code = status_code
        self.detail = detail
        self.sync_status = sync_status
        super().__init__(detail)


def check_user_id(user_id: Optional[str]):
    if not user_id:
        raise TriggerRejected(400, "user_id is required")
    # Ids become document path segments
    if "/" in user_id:
        raise TriggerRejected(400, "Invalid user_id")


class SyncDispatcher:
    """
    Validates sync requests and starts runs as detached tasks. The only link
    between a running sync and status readers is the persisted SyncStatus.
    """

    def __init__(self, store: DocumentStore, credentials: CredentialProvider, engine: SyncEngine,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.credentials = credentials
        self.engine = engine
        self.clock = clock
        self._tasks: Set[asyncio.Task] = set()

    async def trigger(self, user_id: str) -> asyncio.Task:
        check_user_id(user_id)

        user = await self.store.get(user_path(user_id))
        if not user:
            raise TriggerRejected(404, "User not found")
        if not user.get("trakt_connected") or not user.get("trakt_access_token"):
            raise TriggerRejected(400, "Trakt not connected for this user")

        current = user.get("trakt_sync_status") or {}
        if current.get("status") == "in_progress":
            raise TriggerRejected(409, "Sync already in progress", current)

        try:
            access_token = await self.credentials.get_valid_bearer_token(user_id)
        except AuthError as e:
            logger.error(f"Failed to get Trakt token for user {user_id}: {e}")
            raise TriggerRejected(401, "Failed to refresh Trakt token")

        # The token refresh awaited, so re-check and claim atomically
        if not await self._claim(user_id):
            raise TriggerRejected(409, "Sync already in progress")

        task = asyncio.create_task(self._run(user_id, access_token))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _claim(self, user_id: str) -> bool:
        async with self.store.transaction(user_path(user_id)) as txn:
            user = txn.get() or {}
            if (user.get("trakt_sync_status") or {}).get("status") == "in_progress":
                return False
            claimed = SyncStatus(user_id=user_id, status="in_progress", last_synced_at=self.clock())
            txn.set({"trakt_sync_status": claimed.model_dump()}, merge=True)
        return True

    async def _run(self, user_id: str, access_token: str):
        try:
            result = await self.engine.run(user_id, access_token)
            logger.info(f"Sync finished for user {user_id}: success={result.success}")
        except Exception as e:
            # Status stays in_progress; reset_stale_runs picks it up later
            logger.error(f"Sync crashed for user {user_id}: {e}", exc_info=True)

    async def wait_idle(self):
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def active_runs(self) -> int:
        return len(self._tasks)

    async def read_status(self, user_id: str) -> Dict[str, Any]:
        check_user_id(user_id)

        user = await self.store.get(user_path(user_id))
        if not user:
            raise TriggerRejected(404, "User not found")

        connected = bool(user.get("trakt_connected"))
        sync_status = user.get("trakt_sync_status")
        if not sync_status:
            return {"connected": connected, "synced": False}

        status = SyncStatus.model_validate(sync_status)
        return {
            "connected": connected,
            "synced": True,
            "status": status.status,
            "last_synced_at": status.last_synced_at.isoformat() if status.last_synced_at else None,
            "items_synced": status.items_synced.model_dump(),
            "errors": status.errors,
            "failed_collections": status.failed_collections,
        }

    async def reset_stale_runs(self, max_age_seconds: Optional[int] = None) -> int:
        """
        Marks runs that have sat in in_progress longer than max_age_seconds as
        failed, so a crashed run does not block the user forever.
        """
        if max_age_seconds is None:
            max_age_seconds = settings.SYNC_STALE_AFTER_SECONDS
        max_age = timedelta(seconds=max_age_seconds)
        now = self.clock()
        reset = 0

        users = await self.store.list_documents("users")
        for user_id, user in users.items():
            current = user.get("trakt_sync_status") or {}
            if current.get("status") != "in_progress":
                continue

            async with self.store.transaction(user_path(user_id)) as txn:
                doc = txn.get() or {}
                current = doc.get("trakt_sync_status") or {}
                started = parse_timestamp(current.get("last_synced_at"))
                if current.get("status") != "in_progress" or (started and now - started < max_age):
                    continue
                errors = list(current.get("errors") or [])
                errors.append(f"stale: run did not finish within {int(max_age.total_seconds())}s")
                txn.set({"trakt_sync_status": {"status": "failed", "errors": errors}}, merge=True)

            logger.warning(f"Reset stale sync run for user {user_id}")
            reset += 1

        return reset
