import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .cache import MetadataCache, utcnow
from .clients.tmdb_client import TMDBClient
from .config import settings
from .store import DocumentStore
from .transform import parse_timestamp

logger = logging.getLogger(__name__)

EPISODE_META_FIELDS = (
    "episode_id",
    "episode_name",
    "episode_air_date",
    "episode_number",
    "season_number",
    "tv_show_id",
)
DEFAULT_ENRICH_LISTS = ("already-watched", "watchlist", "favorites")


def parse_episode_key(key: str) -> Optional[Tuple[int, int]]:
    """Splits an episode key like '2_5' into (season, episode); None if malformed."""
    season_str, sep, episode_str = key.partition("_")
    if not sep:
        return None
    try:
        return int(season_str), int(episode_str)
    except ValueError:
        return None


def needs_normalization(value: Any) -> bool:
    return isinstance(value, (int, float, str)) and not isinstance(value, bool)


def normalize_timestamp(value: Any) -> Any:
    """Epoch millis / ISO strings become datetimes; anything unparseable is kept as is."""
    if not needs_normalization(value):
        return value
    parsed = parse_timestamp(value)
    return parsed if parsed is not None else value


def is_fully_enriched(episode: Dict) -> bool:
    return all(episode.get(field) is not None for field in EPISODE_META_FIELDS)


class EnrichmentEngine:
    def __init__(self, cache: MetadataCache, tmdb: TMDBClient, store: DocumentStore):
        self.cache = cache
        self.tmdb = tmdb
        self.store = store

    async def enrich_episodes(self, show_id: int, episodes: Dict[str, Dict]) -> Dict[str, Dict]:
        """
        Adds TMDB episode metadata to episode tracking records keyed
        "{season}_{episode}". One cache lookup per season. `watched` and
        `watched_at` are preserved; a non-canonical `watched_at` is converted
        to a datetime.
        """
        enriched = dict(episodes)

        by_season: Dict[int, List[Tuple[str, int]]] = defaultdict(list)
        for key in episodes:
            parsed = parse_episode_key(key)
            if parsed is None:
                logger.warning(f"Ignoring malformed episode key {key!r} for show {show_id}")
                continue
            season_number, episode_number = parsed
            by_season[season_number].append((key, episode_number))

        logger.info(f"Enriching {len(episodes)} episodes across {len(by_season)} seasons for show {show_id}")

        enriched_count = 0
        skipped_count = 0
        already_count = 0

        for season_number, keys in by_season.items():
            season = await self.cache.get_or_fetch(show_id, season_number)
            if season is None:
                # Being populated elsewhere or in error backoff; picked up on a later pass
                skipped_count += len(keys)
                continue

            for key, episode_number in keys:
                episode = episodes[key]
                stale_watched_at = needs_normalization(episode.get("watched_at"))

                if is_fully_enriched(episode) and not stale_watched_at:
                    already_count += 1
                    continue

                updated = dict(episode)
                if stale_watched_at:
                    updated["watched_at"] = normalize_timestamp(episode["watched_at"])

                cached = season.episodes.get(str(episode_number))
                if cached:
                    updated.update({
                        "episode_id": cached.episode_id,
                        "episode_name": cached.episode_name,
                        "episode_air_date": cached.episode_air_date,
                        "episode_number": episode_number,
                        "season_number": season_number,
                        "tv_show_id": show_id,
                    })
                    enriched_count += 1

                if updated != episode:
                    enriched[key] = updated

        logger.info(
            f"Enriched {enriched_count} episodes for show {show_id} "
            f"({already_count} already enriched, {skipped_count} skipped)"
        )
        return enriched

    async def enrich_media_item(self, item: Dict) -> Dict:
        if not item or not item.get("id"):
            return item

        try:
            if item.get("media_type") == "movie":
                details = await self.tmdb.fetch_movie(item["id"])
                title_field, date_field = "title", "release_date"
                details_title, details_date = details.get("title"), details.get("release_date")
            elif item.get("media_type") == "tv":
                details = await self.tmdb.fetch_show(item["id"])
                title_field, date_field = "name", "first_air_date"
                details_title, details_date = details.get("name"), details.get("first_air_date")
            else:
                return item
        except Exception as e:
            logger.warning(f"Could not enrich {item.get('media_type')} {item.get('id')}: {e}")
            return item

        enriched = dict(item)
        enriched["poster_path"] = details.get("poster_path")
        enriched["vote_average"] = details.get("vote_average")
        genre_ids = details.get("genre_ids")
        if genre_ids is None:
            genre_ids = [g["id"] for g in details.get("genres") or [] if "id" in g]
        enriched["genre_ids"] = genre_ids
        if not enriched.get(date_field) and details_date:
            enriched[date_field] = details_date
        if not enriched.get(title_field) and details_title:
            enriched[title_field] = details_title
        return enriched

    async def enrich_media_items(self, items: Dict[str, Dict], batch_size: Optional[int] = None,
                                 delay_ms: Optional[int] = None) -> Dict[str, Dict]:
        """Enriches list items in parallel batches with a pause between batches (TMDB rate limits)."""
        batch_size = batch_size or settings.ENRICH_BATCH_SIZE
        delay_ms = settings.ENRICH_BATCH_DELAY_MS if delay_ms is None else delay_ms
        keys = list(items.keys())
        results: Dict[str, Dict] = {}

        for i in range(0, len(keys), batch_size):
            batch = keys[i:i + batch_size]
            enriched = await asyncio.gather(*(self.enrich_media_item(items[k]) for k in batch))
            results.update(zip(batch, enriched))

            if i + batch_size < len(keys) and delay_ms:
                await asyncio.sleep(delay_ms / 1000.0)
            logger.debug(f"Enriched {min(i + batch_size, len(keys))}/{len(keys)} items")

        return results

    async def enrich_episode_document(self, user_id: str, show_id: int, doc: Optional[Dict] = None) -> int:
        """Enriches users/{uid}/episode_tracking/{show_id} in place. Returns the number of episodes seen."""
        path = f"users/{user_id}/episode_tracking/{show_id}"
        if doc is None:
            doc = await self.store.get(path)
        episodes = (doc or {}).get("episodes") or {}
        if not episodes:
            return 0

        enriched = await self.enrich_episodes(show_id, episodes)

        last_updated = (doc.get("metadata") or {}).get("last_updated")
        fields: Dict[str, Any] = {}
        if enriched != episodes:
            fields["episodes"] = enriched
        if needs_normalization(last_updated):
            fields["metadata.last_updated"] = normalize_timestamp(last_updated)

        if fields:
            fields["metadata.last_enriched"] = utcnow()
            await self.store.update(path, fields)
        else:
            logger.debug(f"Episode tracking for show {show_id} unchanged, skipping write")
        return len(episodes)

    async def enrichment_status(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        """Per default list: whether it exists, its size, when it was last enriched and whether any item has a poster."""
        lists = {}
        for list_id in DEFAULT_ENRICH_LISTS:
            doc = await self.store.get(f"users/{user_id}/lists/{list_id}")
            if doc is None:
                lists[list_id] = {"exists": False}
                continue

            items = doc.get("items") or {}
            last_enriched = parse_timestamp((doc.get("metadata") or {}).get("last_enriched"))
            lists[list_id] = {
                "exists": True,
                "item_count": len(items),
                "last_enriched": last_enriched.isoformat() if last_enriched else None,
                "has_posters": any(item.get("poster_path") for item in items.values()),
            }
        return lists

    async def enrich_user(self, user_id: str, lists: Optional[Iterable[str]] = None,
                          include_episodes: bool = False) -> Dict[str, int]:
        counts = {"lists": 0, "items": 0, "episodes": 0}

        for list_id in lists or DEFAULT_ENRICH_LISTS:
            path = f"users/{user_id}/lists/{list_id}"
            try:
                doc = await self.store.get(path)
                items = (doc or {}).get("items") or {}
                if not items:
                    logger.info(f"List {list_id} missing or empty, skipping")
                    continue

                logger.info(f"Enriching {list_id} with {len(items)} items...")
                enriched = await self.enrich_media_items(items)
                await self.store.update(path, {"items": enriched, "metadata.last_enriched": utcnow()})
                counts["lists"] += 1
                counts["items"] += len(enriched)
            except Exception as e:
                logger.error(f"Failed to enrich list {list_id}: {e}", exc_info=True)

        if include_episodes:
            docs = await self.store.list_documents(f"users/{user_id}/episode_tracking")
            for doc_id, doc in docs.items():
                try:
                    counts["episodes"] += await self.enrich_episode_document(user_id, int(doc_id), doc)
                except Exception as e:
                    logger.error(f"Failed to enrich episodes for show {doc_id}: {e}", exc_info=True)

        logger.info(f"Enrichment for user {user_id} done: {counts}")
        return counts
