import copy
import unittest
from datetime import datetime, timezone

from traktsync.config import settings
from traktsync.engine import SyncEngine
from traktsync.errors import AuthError, UpstreamError
from traktsync.store import DocumentStore

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

def movie(tmdb, title, year=2000):
    return {"title": title, "year": year, "ids": {"trakt": tmdb + 1000, "slug": title.lower(), "tmdb": tmdb}}

def show(tmdb, title, year=2010):
    return {"title": title, "year": year, "ids": {"trakt": tmdb + 2000, "slug": title.lower(), "tmdb": tmdb}}

class MockTrakt:
    def __init__(self):
        self.calls = []
        self.failures = {}
        self.on_first_call = None
        self.watched_movies = [
            {"plays": 2, "last_watched_at": "2024-01-02T10:00:00.000Z", "movie": movie(10, "Heat")},
            # No TMDB id, dropped
            {"plays": 1, "last_watched_at": "2024-01-03T10:00:00.000Z",
             "movie": {"title": "Obscure", "year": 1970, "ids": {"trakt": 5, "slug": "obscure"}}},
        ]
        self.watched_shows = [{
            "plays": 3,
            "last_watched_at": "2024-02-01T21:00:00.000Z",
            "show": show(100, "Show"),
            "seasons": [{"number": 1, "episodes": [
                {"number": 1, "plays": 1, "last_watched_at": "2024-01-30T21:00:00.000Z"},
                {"number": 2, "plays": 2, "last_watched_at": "2024-02-01T21:00:00.000Z"},
            ]}],
        }]
        self.ratings = [
            {"rated_at": "2024-01-05T00:00:00.000Z", "rating": 8, "type": "movie", "movie": movie(10, "Heat")},
            {"rated_at": "2024-01-06T00:00:00.000Z", "rating": 6, "type": "show", "show": show(100, "Show")},
            {"rated_at": "2024-01-07T00:00:00.000Z", "rating": 9, "type": "episode",
             "episode": {"season": 1, "number": 1, "title": "Pilot", "ids": {"trakt": 9}}},
        ]
        self.watchlist = [{"listed_at": "2024-03-01T00:00:00.000Z", "type": "movie", "movie": movie(11, "Ronin")}]
        self.favorites = [{"listed_at": "2024-03-02T00:00:00.000Z", "type": "show", "show": show(101, "Other")}]
        self.lists = [{"name": "Noir", "description": "", "privacy": "public",
                       "created_at": "2023-01-01T00:00:00.000Z", "updated_at": "2024-01-01T00:00:00.000Z",
                       "ids": {"trakt": 77, "slug": "noir"}}]
        self.list_items = {"noir": [{"listed_at": "2024-01-01T00:00:00.000Z", "type": "movie",
                                     "movie": movie(12, "Laura")}]}

    async def _call(self, name, value):
        if self.on_first_call and not self.calls:
            await self.on_first_call()
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]
        return copy.deepcopy(value)

    async def get_watched_movies(self, token):
        return await self._call("watched_movies", self.watched_movies)

    async def get_watched_shows(self, token):
        return await self._call("watched_shows", self.watched_shows)

    async def get_ratings(self, token):
        return await self._call("ratings", self.ratings)

    async def get_watchlist(self, token):
        return await self._call("watchlist", self.watchlist)

    async def get_favorites(self, token):
        return await self._call("favorites", self.favorites)

    async def get_user_profile(self, token):
        return await self._call("profile", {"username": "alice"})

    async def get_user_lists(self, token, username):
        return await self._call("lists", self.lists)

    async def get_list_items(self, token, username, slug):
        return await self._call(f"list_items/{slug}", self.list_items[slug])

class TestSyncEngine(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        settings.WRITE_BATCH_SIZE = 500
        self.store = DocumentStore(persist=False)
        self.store.docs["users/u1"] = {"trakt_connected": True}
        self.trakt = MockTrakt()
        self.engine = SyncEngine(self.store, self.trakt, clock=lambda: NOW)

    async def status(self):
        return (await self.store.get("users/u1"))["trakt_sync_status"]

    async def test_full_run(self):
        result = await self.engine.run("u1", "token", enrich_episodes=False)

        self.assertTrue(result.success)
        status = await self.status()
        self.assertEqual(status["status"], "completed")
        self.assertEqual(status["errors"], [])
        self.assertEqual(status["items_synced"], {
            "movies": 1, "shows": 1, "episodes": 2, "ratings": 2,
            "lists": 1, "favorites": 1, "watchlist_items": 1,
        })

        already = await self.store.get("users/u1/lists/already-watched")
        self.assertEqual(set(already["items"]), {"movie-10", "tv-100"})
        self.assertEqual(already["metadata"]["item_count"], 2)

        tracking = await self.store.get("users/u1/episode_tracking/100")
        self.assertEqual(tracking["episodes"]["1_2"]["plays"], 2)
        self.assertTrue(tracking["episodes"]["1_1"]["watched"])

        rating = await self.store.get("users/u1/ratings/movie-10")
        self.assertEqual(rating["rating"], 4.0)
        self.assertIsNotNone(await self.store.get("users/u1/ratings/tv-100"))

        custom = await self.store.get("users/u1/lists/trakt_77")
        self.assertEqual(custom["name"], "Noir")
        self.assertEqual(custom["privacy"], "public")
        self.assertIn("movie-12", custom["items"])

    async def test_movie_and_show_with_same_tmdb_id_are_both_kept(self):
        self.trakt.watched_movies = [
            {"plays": 1, "last_watched_at": "2024-01-02T10:00:00.000Z", "movie": movie(1399, "Movie")}]
        self.trakt.watched_shows[0]["show"] = show(1399, "Thrones")
        self.trakt.watchlist = [
            {"listed_at": "2024-03-01T00:00:00.000Z", "type": "movie", "movie": movie(1399, "Movie")},
            {"listed_at": "2024-03-01T00:00:00.000Z", "type": "show", "show": show(1399, "Thrones")},
        ]

        await self.engine.run("u1", "token", enrich_episodes=False)

        already = await self.store.get("users/u1/lists/already-watched")
        self.assertEqual(set(already["items"]), {"movie-1399", "tv-1399"})
        self.assertEqual(already["metadata"]["item_count"], 2)
        watchlist = await self.store.get("users/u1/lists/watchlist")
        self.assertEqual(watchlist["items"]["tv-1399"]["id"], 1399)
        self.assertEqual(watchlist["items"]["movie-1399"]["media_type"], "movie")
        self.assertEqual((await self.status())["items_synced"]["watchlist_items"], 2)

    async def test_in_progress_persisted_before_pulls(self):
        seen = []

        async def capture():
            seen.append((await self.status())["status"])

        self.trakt.on_first_call = capture
        await self.engine.run("u1", "token", enrich_episodes=False)
        self.assertEqual(seen, ["in_progress"])

    async def test_ratings_failure_is_isolated(self):
        self.trakt.failures["ratings"] = UpstreamError(502, "bad gateway")

        result = await self.engine.run("u1", "token", enrich_episodes=False)

        self.assertFalse(result.success)
        status = await self.status()
        self.assertEqual(status["status"], "failed")
        self.assertEqual(status["failed_collections"], ["ratings"])
        self.assertEqual(len(status["errors"]), 1)
        self.assertTrue(status["errors"][0].startswith("ratings: "))
        self.assertEqual(status["items_synced"]["ratings"], 0)
        self.assertEqual(status["items_synced"]["watchlist_items"], 1)
        self.assertEqual(status["items_synced"]["favorites"], 1)
        self.assertEqual(status["items_synced"]["lists"], 1)
        self.assertIsNotNone(await self.store.get("users/u1/lists/watchlist"))

    async def test_single_list_failure_does_not_stop_others(self):
        self.trakt.lists.append({"name": "Broken", "ids": {"trakt": 78, "slug": "broken"}})
        self.trakt.failures["list_items/broken"] = UpstreamError(500, "oops")

        await self.engine.run("u1", "token", enrich_episodes=False)

        status = await self.status()
        self.assertEqual(status["failed_collections"], ["lists/broken"])
        self.assertEqual(status["items_synced"]["lists"], 1)

    async def test_auth_error_aborts_run(self):
        self.trakt.failures["watched_shows"] = AuthError("token revoked")

        result = await self.engine.run("u1", "token", enrich_episodes=False)

        self.assertFalse(result.success)
        self.assertEqual(self.trakt.calls, ["watched_movies", "watched_shows"])
        status = await self.status()
        self.assertEqual(status["status"], "failed")
        self.assertTrue(status["errors"][-1].startswith("fatal: "))

    async def test_rerun_with_same_data_is_noop(self):
        await self.engine.run("u1", "token", enrich_episodes=False)
        first = copy.deepcopy(self.store.docs)

        await self.engine.run("u1", "token", enrich_episodes=False)
        self.assertEqual(self.store.docs, first)

    async def test_rerun_keeps_enrichment_fields(self):
        await self.engine.run("u1", "token", enrich_episodes=False)
        await self.store.update("users/u1/episode_tracking/100", {
            "episodes.1_1.episode_id": 555,
            "episodes.1_1.episode_name": "Pilot",
        })
        await self.store.update("users/u1/lists/watchlist", {"items.movie-11.poster_path": "/ronin.jpg"})

        self.trakt.watched_shows[0]["seasons"][0]["episodes"][1]["plays"] = 3
        await self.engine.run("u1", "token", enrich_episodes=False)

        tracking = await self.store.get("users/u1/episode_tracking/100")
        self.assertEqual(tracking["episodes"]["1_1"]["episode_id"], 555)
        self.assertTrue(tracking["episodes"]["1_1"]["watched"])
        self.assertEqual(tracking["episodes"]["1_2"]["plays"], 3)
        watchlist = await self.store.get("users/u1/lists/watchlist")
        self.assertEqual(watchlist["items"]["movie-11"]["poster_path"], "/ronin.jpg")

    async def test_writes_are_batched(self):
        settings.WRITE_BATCH_SIZE = 2
        self.trakt.ratings = [
            {"rated_at": "2024-01-05T00:00:00.000Z", "rating": 10, "type": "movie", "movie": movie(i, f"M{i}")}
            for i in range(1, 6)
        ]
        commits = []
        original_batch = self.store.batch

        def spy_batch(max_writes=None):
            batch = original_batch(max_writes)
            original_commit = batch.commit

            async def commit():
                commits.append(len(batch))
                await original_commit()

            batch.commit = commit
            return batch

        self.store.batch = spy_batch
        await self.engine.run("u1", "token", enrich_episodes=False)

        self.assertIn([2, 2, 1], [commits[i:i + 3] for i in range(len(commits))])
        ratings = await self.store.list_documents("users/u1/ratings")
        self.assertEqual(len(ratings), 5)

    async def test_episode_enrichment_runs_after_collections(self):
        enriched = []

        class MockEnricher:
            tmdb = type("T", (), {"configured": False})()

            async def enrich_episode_document(self, user_id, show_id):
                enriched.append((user_id, show_id))
                return 2

        self.engine.enricher = MockEnricher()
        result = await self.engine.run("u1", "token", enrich_episodes=True)

        self.assertTrue(result.success)
        self.assertEqual(enriched, [("u1", 100)])

if __name__ == '__main__':
    unittest.main()
