from datetime import datetime
from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional

SyncState = Literal["idle", "in_progress", "completed", "failed"]
CacheState = Literal["populating", "complete", "error"]


class ItemsSynced(BaseModel):
    movies: int = 0
    shows: int = 0
    episodes: int = 0
    ratings: int = 0
    lists: int = 0
    favorites: int = 0
    watchlist_items: int = 0


class SyncStatus(BaseModel):
    """Stored as the `trakt_sync_status` field of users/{user_id}."""
    user_id: str
    status: SyncState = "idle"
    last_synced_at: Optional[datetime] = None
    items_synced: ItemsSynced = Field(default_factory=ItemsSynced)
    errors: List[str] = Field(default_factory=list)
    failed_collections: List[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    success: bool
    items_synced: ItemsSynced
    errors: List[str] = Field(default_factory=list)


class EpisodeMeta(BaseModel):
    episode_id: int
    episode_name: str
    episode_air_date: Optional[str] = None


class CacheEntry(BaseModel):
    # Keyed by episode number as a string
    episodes: Dict[str, EpisodeMeta] = Field(default_factory=dict)
    last_updated: datetime
    status: CacheState
