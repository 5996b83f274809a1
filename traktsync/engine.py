import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .cache import utcnow
from .clients.trakt_client import TraktClient
from .config import settings
from .enrich import EnrichmentEngine
from .errors import AuthError, TraktSyncError, TransformError
from .models import ItemsSynced, SyncResult, SyncStatus
from .store import DocumentStore
from . import transform

logger = logging.getLogger(__name__)


def user_path(user_id: str) -> str:
    return f"users/{user_id}"


@dataclass
class SyncRun:
    user_id: str
    access_token: str
    started_at: datetime
    items_synced: ItemsSynced = field(default_factory=ItemsSynced)
    errors: List[str] = field(default_factory=list)
    failed_collections: List[str] = field(default_factory=list)
    # Movies and shows gathered by the watched steps, written together as one list
    already_watched: Dict[str, Dict] = field(default_factory=dict)
    show_ids: List[int] = field(default_factory=list)

    def fail(self, collection: str, error: Exception):
        self.errors.append(f"{collection}: {error}")
        self.failed_collections.append(collection)


class SyncEngine:
    """
    Runs one full Trakt -> store pass for a user. Collections are pulled in a
    fixed order, each inside its own failure boundary, so one failing
    collection never stops the others. Only AuthError aborts the run.

    Callers must not start two runs for the same user at once (see dispatch).
    """

    def __init__(self, store: DocumentStore, trakt: TraktClient,
                 enricher: Optional[EnrichmentEngine] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.trakt = trakt
        self.enricher = enricher
        self.clock = clock

    def _steps(self) -> List[Tuple[str, Callable[[SyncRun], Awaitable[None]]]]:
        return [
            ("watched_movies", self.sync_watched_movies),
            ("watched_shows", self.sync_watched_shows),
            ("already_watched", self.write_already_watched),
            ("ratings", self.sync_ratings),
            ("watchlist", self.sync_watchlist),
            ("favorites", self.sync_favorites),
            ("lists", self.sync_custom_lists),
        ]

    async def run(self, user_id: str, access_token: str, enrich_episodes: Optional[bool] = None) -> SyncResult:
        if enrich_episodes is None:
            enrich_episodes = settings.SYNC_ENRICH_EPISODES

        run = SyncRun(user_id=user_id, access_token=access_token, started_at=self.clock())
        await self._write_status(run, "in_progress")
        logger.info(f"Sync started for user {user_id}")

        try:
            for name, step in self._steps():
                try:
                    await step(run)
                except AuthError:
                    raise
                except Exception as e:
                    logger.error(f"Failed to sync {name} for user {user_id}: {e}",
                                 exc_info=not isinstance(e, TraktSyncError))
                    run.fail(name, e)

            if enrich_episodes and self.enricher and run.show_ids:
                try:
                    await self.enrich_synced_episodes(run)
                except Exception as e:
                    logger.error(f"Episode enrichment failed for user {user_id}: {e}", exc_info=True)
                    run.fail("episode_enrichment", e)

        except AuthError as e:
            logger.error(f"Fatal sync error for user {user_id}: {e}")
            run.errors.append(f"fatal: {e}")

        final = "failed" if run.errors else "completed"
        await self._write_status(run, final)
        logger.info(f"Sync {final} for user {user_id}: {run.items_synced.model_dump()} ({len(run.errors)} errors)")

        return SyncResult(success=not run.errors, items_synced=run.items_synced, errors=run.errors)

    async def _write_status(self, run: SyncRun, status: str):
        sync_status = SyncStatus(
            user_id=run.user_id,
            status=status,
            last_synced_at=self.clock(),
            items_synced=run.items_synced,
            errors=run.errors,
            failed_collections=run.failed_collections,
        )
        await self.store.update(user_path(run.user_id), {"trakt_sync_status": sync_status.model_dump()})

    async def _write_batched(self, writes: List[Tuple[str, Dict]]):
        """Merge-upserts in batches of WRITE_BATCH_SIZE."""
        size = settings.WRITE_BATCH_SIZE
        for i in range(0, len(writes), size):
            batch = self.store.batch()
            for path, data in writes[i:i + size]:
                batch.set(path, data, merge=True)
            await batch.commit()

    async def _write_list(self, run: SyncRun, list_id: str, items: Dict[str, Dict], extra: Optional[Dict] = None):
        doc = dict(extra or {})
        doc["items"] = items
        doc["metadata"] = {"last_updated": self.clock(), "item_count": len(items)}
        await self.store.set(f"{user_path(run.user_id)}/lists/{list_id}", doc, merge=True)

    async def sync_watched_movies(self, run: SyncRun):
        movies = await self.trakt.get_watched_movies(run.access_token)
        for watched in movies:
            try:
                item = transform.transform_watched_movie(watched)
            except TransformError as e:
                logger.debug(f"Skipping watched movie: {e}")
                continue
            run.already_watched[transform.item_key(item)] = item
            run.items_synced.movies += 1

    async def sync_watched_shows(self, run: SyncRun):
        shows = await self.trakt.get_watched_shows(run.access_token)
        now = self.clock()
        writes = []
        show_ids = []
        episode_count = 0

        for watched in shows:
            try:
                show_id, tracking = transform.transform_episode_tracking(watched, now)
                item = transform.transform_watched_show(watched)
            except TransformError as e:
                logger.debug(f"Skipping watched show: {e}")
                continue
            writes.append((f"{user_path(run.user_id)}/episode_tracking/{show_id}", tracking))
            show_ids.append(show_id)
            episode_count += len(tracking["episodes"])
            run.already_watched[transform.item_key(item)] = item

        await self._write_batched(writes)
        run.show_ids.extend(show_ids)
        run.items_synced.shows = len(show_ids)
        run.items_synced.episodes = episode_count

    async def write_already_watched(self, run: SyncRun):
        if not run.already_watched:
            return
        path = f"{user_path(run.user_id)}/lists/already-watched"
        extra = {"id": "already-watched", "name": "Already Watched"}
        if await self.store.get(path) is None:
            extra["created_at"] = self.clock()
        await self._write_list(run, "already-watched", run.already_watched, extra)

    async def sync_ratings(self, run: SyncRun):
        ratings = await self.trakt.get_ratings(run.access_token)
        writes = []
        for rating in ratings:
            try:
                doc = transform.transform_rating(rating)
            except TransformError as e:
                logger.debug(f"Skipping rating: {e}")
                continue
            writes.append((f"{user_path(run.user_id)}/ratings/{doc['id']}", doc))

        await self._write_batched(writes)
        run.items_synced.ratings = len(writes)

    async def _sync_item_list(self, run: SyncRun, list_id: str, rows: List[Dict],
                              mapper: Callable[[Dict], Dict]) -> int:
        items = {}
        for row in rows:
            try:
                item = mapper(row)
            except TransformError as e:
                logger.debug(f"Skipping {list_id} item: {e}")
                continue
            items[transform.item_key(item)] = item

        if items:
            await self._write_list(run, list_id, items)
        return len(items)

    async def sync_watchlist(self, run: SyncRun):
        rows = await self.trakt.get_watchlist(run.access_token)
        run.items_synced.watchlist_items = await self._sync_item_list(
            run, "watchlist", rows, transform.transform_watchlist_item)

    async def sync_favorites(self, run: SyncRun):
        rows = await self.trakt.get_favorites(run.access_token)
        run.items_synced.favorites = await self._sync_item_list(
            run, "favorites", rows, transform.transform_favorite)

    async def sync_custom_lists(self, run: SyncRun):
        profile = await self.trakt.get_user_profile(run.access_token)
        username = profile["username"]
        trakt_lists = await self.trakt.get_user_lists(run.access_token, username)

        for trakt_list in trakt_lists:
            ids = trakt_list.get("ids") or {}
            slug = ids.get("slug") or str(ids.get("trakt"))
            try:
                rows = await self.trakt.get_list_items(run.access_token, username, slug)
                items = {}
                for row in rows:
                    try:
                        item = transform.transform_list_item(row)
                    except TransformError as e:
                        logger.debug(f"Skipping list item in {slug}: {e}")
                        continue
                    items[transform.item_key(item)] = item

                if self.enricher and self.enricher.tmdb.configured:
                    items = await self.enricher.enrich_media_items(items)

                await self._write_list(run, f"trakt_{ids.get('trakt')}", items, transform.transform_list(trakt_list))
                run.items_synced.lists += 1
                logger.info(f"Synced custom list {trakt_list.get('name')!r} with {len(items)} items")
            except AuthError:
                raise
            except Exception as e:
                logger.error(f"Failed to sync list {slug!r} for user {run.user_id}: {e}",
                             exc_info=not isinstance(e, TraktSyncError))
                run.fail(f"lists/{slug}", e)

    async def enrich_synced_episodes(self, run: SyncRun):
        total = 0
        for show_id in run.show_ids:
            total += await self.enricher.enrich_episode_document(run.user_id, show_id)
        logger.info(f"Enriched episode tracking for {len(run.show_ids)} shows ({total} episodes) for user {run.user_id}")
