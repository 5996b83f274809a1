import asyncio
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from traktsync.cache import MetadataCache, cache_ttl, is_cache_stale, is_season_ongoing, season_cache_path
from traktsync.config import settings
from traktsync.errors import UpstreamError
from traktsync.models import CacheEntry, EpisodeMeta
from traktsync.store import DocumentStore

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

OLD_SEASON = [
    {"episode_number": 1, "id": 555, "name": "Pilot", "air_date": "2020-01-01"},
    {"episode_number": 2, "id": 556, "name": "Second", "air_date": "2020-01-08"},
]

class MockTMDB:
    def __init__(self, episodes=None, fail=False, delay=0.0):
        self.episodes = OLD_SEASON if episodes is None else episodes
        self.fail = fail
        self.delay = delay
        self.calls = []
        self.configured = True

    async def fetch_season(self, show_id, season_number):
        self.calls.append((show_id, season_number))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise UpstreamError(500, "boom")
        return self.episodes

def meta(air_date):
    return EpisodeMeta(episode_id=1, episode_name="x", episode_air_date=air_date)

class TestStaleness(unittest.TestCase):
    def setUp(self):
        settings.CACHE_DEFAULT_TTL_DAYS = 30
        settings.CACHE_ONGOING_TTL_DAYS = 7
        settings.CACHE_RECENT_AIR_DATE_DAYS = 14

    def test_aired_long_ago_uses_long_ttl(self):
        entry = CacheEntry(episodes={"1": meta("2020-01-01"), "2": meta("2020-01-08")},
                           last_updated=NOW, status="complete")
        self.assertFalse(is_season_ongoing(entry.episodes, NOW))
        self.assertEqual(cache_ttl(entry, NOW), timedelta(days=30))

    def test_missing_air_date_is_ongoing(self):
        entry = CacheEntry(episodes={"1": meta("2020-01-01"), "2": meta(None)},
                           last_updated=NOW, status="complete")
        self.assertEqual(cache_ttl(entry, NOW), timedelta(days=7))

    def test_recent_air_date_is_ongoing(self):
        recent = (NOW - timedelta(days=3)).date().isoformat()
        episodes = {"1": meta("2020-01-01"), "2": meta(recent)}
        self.assertTrue(is_season_ongoing(episodes, NOW))

    def test_latest_air_date_wins_over_episode_order(self):
        recent = (NOW - timedelta(days=3)).date().isoformat()
        # Episode 1 aired most recently even though episode 2 has a higher number
        episodes = {"1": meta(recent), "2": meta("2020-01-08")}
        self.assertTrue(is_season_ongoing(episodes, NOW))

    def test_empty_season_is_ongoing(self):
        self.assertTrue(is_season_ongoing({}, NOW))

    def test_stale_after_ttl(self):
        entry = CacheEntry(episodes={"1": meta("2020-01-01")},
                           last_updated=NOW - timedelta(days=31), status="complete")
        self.assertTrue(is_cache_stale(entry, NOW))
        entry.last_updated = NOW - timedelta(days=29)
        self.assertFalse(is_cache_stale(entry, NOW))

class TestMetadataCache(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        settings.CACHE_ERROR_TTL_MINUTES = 5
        self.store = DocumentStore(persist=False)
        self.tmdb = MockTMDB()
        self.cache = MetadataCache(self.store, self.tmdb, clock=lambda: NOW)
        self.path = season_cache_path(100, 1)

    async def test_concurrent_callers_fetch_once(self):
        self.tmdb.delay = 0.01
        results = await asyncio.gather(*(self.cache.get_or_fetch(100, 1) for _ in range(10)))

        self.assertEqual(self.tmdb.calls, [(100, 1)])
        winners = [r for r in results if r is not None]
        self.assertEqual(len(winners), 1)
        self.assertEqual(winners[0].status, "complete")

    async def test_populating_entry_is_skipped(self):
        await self.store.set(self.path, {"status": "populating", "last_updated": NOW})
        self.assertIsNone(await self.cache.get_or_fetch(100, 1))
        self.assertEqual(self.tmdb.calls, [])

    async def test_fresh_entry_served_from_cache(self):
        await self.cache.get_or_fetch(100, 1)
        entry = await self.cache.get_or_fetch(100, 1)

        self.assertEqual(len(self.tmdb.calls), 1)
        self.assertEqual(entry.episodes["1"].episode_name, "Pilot")

    async def test_stale_entry_is_refreshed(self):
        old = CacheEntry(episodes={"1": meta("2020-01-01")},
                         last_updated=NOW - timedelta(days=40), status="complete")
        await self.store.set(self.path, old.model_dump())

        entry = await self.cache.get_or_fetch(100, 1)
        self.assertEqual(len(self.tmdb.calls), 1)
        self.assertEqual(set(entry.episodes), {"1", "2"})
        self.assertEqual(entry.last_updated, NOW)

    async def test_success_keeps_only_id_name_air_date(self):
        self.tmdb.episodes = [{"episode_number": 3, "id": 9, "name": "Three", "air_date": None}]
        await self.cache.get_or_fetch(100, 1)

        stored = await self.store.get(self.path)
        self.assertEqual(stored["status"], "complete")
        self.assertEqual(stored["episodes"], {
            "3": {"episode_id": 9, "episode_name": "Three", "episode_air_date": None}
        })

    async def test_failed_fetch_keeps_previous_episodes(self):
        old = CacheEntry(episodes={"1": meta("2020-01-01")},
                         last_updated=NOW - timedelta(days=40), status="complete")
        await self.store.set(self.path, old.model_dump())
        self.tmdb.fail = True

        self.assertIsNone(await self.cache.get_or_fetch(100, 1))

        stored = await self.store.get(self.path)
        self.assertEqual(stored["status"], "error")
        self.assertEqual(stored["last_updated"], NOW)
        self.assertIn("1", stored["episodes"])

    async def test_error_backoff(self):
        await self.store.set(self.path, {"status": "error", "last_updated": NOW - timedelta(minutes=2)})
        self.assertIsNone(await self.cache.get_or_fetch(100, 1))
        self.assertEqual(self.tmdb.calls, [])

        await self.store.set(self.path, {"status": "error", "last_updated": NOW - timedelta(minutes=6)})
        entry = await self.cache.get_or_fetch(100, 1)
        self.assertIsNotNone(entry)
        self.assertEqual(len(self.tmdb.calls), 1)

    async def test_failure_is_not_raised(self):
        self.tmdb.fail = True
        self.assertIsNone(await self.cache.get_or_fetch(100, 1))
        # Error backoff now applies
        self.assertIsNone(await self.cache.get_or_fetch(100, 1))
        self.assertEqual(len(self.tmdb.calls), 1)

    async def test_failed_claim_write_does_not_block_later_fetch(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = DocumentStore(os.path.join(tmp, "missing", "store.json"), persist=True)
            cache = MetadataCache(store, self.tmdb, clock=lambda: NOW)

            self.assertIsNone(await cache.get_or_fetch(100, 1))
            self.assertIsNone(await store.get(self.path))

            # Disk recovers
            store.persist = False
            entry = await cache.get_or_fetch(100, 1)

        self.assertIsNotNone(entry)
        self.assertEqual(self.tmdb.calls, [(100, 1)])

if __name__ == '__main__':
    unittest.main()
