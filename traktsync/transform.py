"""Mapping of Trakt payloads to stored documents. Items are keyed by media type and TMDB id."""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from .errors import TransformError


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO string or epoch milliseconds -> aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _year_date(year: Optional[int]) -> Optional[str]:
    return f"{year}-01-01" if year else None


def _media(record: Dict) -> Tuple[str, Dict]:
    """Picks the movie or show payload out of a rating/list/watchlist/favorite row."""
    if record.get("movie"):
        return "movie", record["movie"]
    if record.get("show"):
        return "tv", record["show"]
    # episodes, seasons and people are not tracked
    raise TransformError(f"Unsupported item type {record.get('type')!r}")


def _tmdb_id(media: Dict) -> int:
    tmdb_id = (media.get("ids") or {}).get("tmdb")
    if not tmdb_id:
        raise TransformError(f"{media.get('title')!r} has no TMDB ID")
    return int(tmdb_id)


def item_key(item: Dict) -> str:
    """Key of an item in a list's items map, "movie-123" / "tv-456". TMDB movie and tv ids overlap."""
    return f"{item['media_type']}-{item['id']}"


def _compact(doc: Dict) -> Dict:
    return {k: v for k, v in doc.items() if v is not None}


def transform_episode_tracking(watched_show: Dict, now: datetime) -> Tuple[int, Dict]:
    """Returns (tmdb_show_id, document) with episodes keyed "{season}_{episode}"."""
    show = watched_show.get("show") or {}
    tmdb_id = _tmdb_id(show)

    episodes = {}
    for season in watched_show.get("seasons") or []:
        for episode in season.get("episodes") or []:
            episodes[f"{season['number']}_{episode['number']}"] = _compact({
                "watched": True,
                "watched_at": parse_timestamp(episode.get("last_watched_at")),
                "plays": episode.get("plays"),
            })

    return tmdb_id, {
        "episodes": episodes,
        "metadata": {
            "tv_show_name": show.get("title"),
            "last_updated": now,
        },
    }


def transform_watched_movie(watched_movie: Dict) -> Dict:
    movie = watched_movie.get("movie") or {}
    return _compact({
        "id": _tmdb_id(movie),
        "media_type": "movie",
        "title": movie.get("title"),
        "release_date": _year_date(movie.get("year")),
        "added_at": parse_timestamp(watched_movie.get("last_watched_at")),
        "plays": watched_movie.get("plays"),
    })


def transform_watched_show(watched_show: Dict) -> Dict:
    show = watched_show.get("show") or {}
    return _compact({
        "id": _tmdb_id(show),
        "media_type": "tv",
        "name": show.get("title"),
        "first_air_date": _year_date(show.get("year")),
        "added_at": parse_timestamp(watched_show.get("last_watched_at")),
        "plays": watched_show.get("plays"),
    })


def transform_rating(rating: Dict) -> Dict:
    media_type, media = _media(rating)
    tmdb_id = _tmdb_id(media)
    return _compact({
        # Document id, "movie-123" / "tv-456"
        "id": f"{media_type}-{tmdb_id}",
        "tmdb_id": tmdb_id,
        "media_type": media_type,
        # Trakt rates 1-10, stored on a 5 star scale
        "rating": rating["rating"] / 2,
        "rated_at": parse_timestamp(rating.get("rated_at")),
        "title": media.get("title"),
    })


def transform_watchlist_item(item: Dict) -> Dict:
    media_type, media = _media(item)
    return _compact({
        "id": _tmdb_id(media),
        "media_type": media_type,
        "title": media.get("title"),
        "release_date": _year_date(media.get("year")),
        "added_at": parse_timestamp(item.get("listed_at")),
    })


def transform_favorite(item: Dict) -> Dict:
    media_type, media = _media(item)
    return _compact({
        "id": _tmdb_id(media),
        "media_type": media_type,
        "title": media.get("title"),
        "added_at": parse_timestamp(item.get("listed_at")),
    })


def transform_list_item(item: Dict) -> Dict:
    media_type, media = _media(item)
    return _compact({
        "id": _tmdb_id(media),
        "media_type": media_type,
        "title": media.get("title"),
        "added_at": parse_timestamp(item.get("listed_at")),
        "trakt_id": (media.get("ids") or {}).get("trakt"),
    })


def transform_list(trakt_list: Dict) -> Dict:
    ids = trakt_list.get("ids") or {}
    return {
        "name": trakt_list.get("name") or "",
        "description": trakt_list.get("description") or "",
        "created_at": parse_timestamp(trakt_list.get("created_at")),
        "updated_at": parse_timestamp(trakt_list.get("updated_at")),
        "trakt_id": ids.get("trakt"),
        "privacy": "public" if trakt_list.get("privacy") == "public" else "private",
        "is_custom": True,
    }
