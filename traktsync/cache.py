"""
Global TMDB season cache.

One document per (show, season) under tmdb_cache/tv/seasons, shared by every
user. Population is single-flight: the caller whose transaction flips the
entry to "populating" is the only one that talks to TMDB; everyone else gets
None and is expected to come back later.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from .clients.tmdb_client import TMDBClient
from .config import settings
from .errors import StorageError
from .models import CacheEntry, EpisodeMeta
from .store import DocumentStore

logger = logging.getLogger(__name__)

SEASON_CACHE_COLLECTION = "tmdb_cache/tv/seasons"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def season_cache_path(show_id: int, season_number: int) -> str:
    return f"{SEASON_CACHE_COLLECTION}/{show_id}_{season_number}"


def _parse_air_date(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_season_ongoing(episodes: Dict[str, EpisodeMeta], now: Optional[datetime] = None) -> bool:
    """
    A season is ongoing if it has no episodes, any episode lacks an air date,
    or the most recently aired episode aired within CACHE_RECENT_AIR_DATE_DAYS.
    Uses the latest air date rather than the highest episode number since
    episodes can air out of order.
    """
    if not episodes:
        return True

    latest = None
    for ep in episodes.values():
        if not ep.episode_air_date:
            return True
        aired = _parse_air_date(ep.episode_air_date)
        if aired is None:
            return True
        if latest is None or aired > latest:
            latest = aired

    now = now or utcnow()
    return now - latest < timedelta(days=settings.CACHE_RECENT_AIR_DATE_DAYS)


def cache_ttl(entry: CacheEntry, now: Optional[datetime] = None) -> timedelta:
    if is_season_ongoing(entry.episodes, now):
        return timedelta(days=settings.CACHE_ONGOING_TTL_DAYS)
    return timedelta(days=settings.CACHE_DEFAULT_TTL_DAYS)


def is_cache_stale(entry: CacheEntry, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return now - entry.last_updated > cache_ttl(entry, now)


class MetadataCache:
    def __init__(self, store: DocumentStore, tmdb: TMDBClient, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.tmdb = tmdb
        self.clock = clock

    def _decide(self, data: Optional[dict], show_id: int, season_number: int):
        """Returns ("skip" | "cached" | "fetch", entry)."""
        if data is None:
            return "fetch", None

        try:
            entry = CacheEntry.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Unreadable cache entry for show {show_id} season {season_number}, refetching: {e}")
            return "fetch", None

        now = self.clock()
        if entry.status == "populating":
            logger.debug(f"Season {season_number} for show {show_id} is being populated, skipping")
            return "skip", None

        if entry.status == "error":
            error_age = now - entry.last_updated
            error_ttl = timedelta(minutes=settings.CACHE_ERROR_TTL_MINUTES)
            if error_age < error_ttl:
                logger.debug(
                    f"Season {season_number} for show {show_id} recently errored, "
                    f"skipping for {int((error_ttl - error_age).total_seconds())}s"
                )
                return "skip", None
            logger.info(f"Error backoff expired for show {show_id} season {season_number}, retrying")

        if entry.status == "complete" and not is_cache_stale(entry, now):
            return "cached", entry

        logger.info(f"Cache stale for show {show_id} season {season_number}, refreshing")
        return "fetch", None

    async def get_or_fetch(self, show_id: int, season_number: int) -> Optional[CacheEntry]:
        """
        Returns the cached season, fetching from TMDB if this caller wins the
        populate race. Returns None when the season is being populated
        elsewhere, is in error backoff, or the fetch failed.
        """
        path = season_cache_path(show_id, season_number)

        try:
            async with self.store.transaction(path) as txn:
                action, entry = self._decide(txn.get(), show_id, season_number)
                if action == "fetch":
                    txn.set({"status": "populating", "last_updated": self.clock()}, merge=True)
        except StorageError as e:
            logger.error(f"Cache transaction failed for show {show_id} season {season_number}: {e}")
            return None

        if action == "skip":
            return None
        if action == "cached":
            return entry

        logger.info(f"Fetching season {season_number} for show {show_id} from TMDB")
        try:
            raw_episodes = await self.tmdb.fetch_season(show_id, season_number)
        except Exception as e:
            logger.error(f"Error fetching season {season_number} for show {show_id}: {e}")
            await self._mark_error(path, show_id, season_number)
            return None

        episodes = {
            str(ep["episode_number"]): EpisodeMeta(
                episode_id=ep["id"],
                episode_name=ep["name"],
                episode_air_date=ep.get("air_date"),
            )
            for ep in raw_episodes
        }
        entry = CacheEntry(episodes=episodes, last_updated=self.clock(), status="complete")

        try:
            # Full overwrite: fresh TMDB data replaces whatever was cached
            await self.store.set(path, entry.model_dump(), merge=False)
        except StorageError as e:
            logger.error(f"Failed to store season {season_number} for show {show_id}: {e}")
            await self._mark_error(path, show_id, season_number)
            return None

        logger.info(f"Cached season {season_number} for show {show_id} with {len(episodes)} episodes")
        return entry

    async def _mark_error(self, path: str, show_id: int, season_number: int):
        # merge=True keeps the episodes from the last good fetch
        try:
            await self.store.set(path, {"status": "error", "last_updated": self.clock()}, merge=True)
        except StorageError as e:
            logger.error(f"Failed to mark show {show_id} season {season_number} as errored: {e}")
            return
        logger.info(
            f"Marked season {season_number} for show {show_id} as error, "
            f"will retry after {settings.CACHE_ERROR_TTL_MINUTES} minutes"
        )
