import asyncio
import logging
import signal
import sys
import uvicorn

from .config import settings
from .store import DocumentStore
from .clients.trakt_client import TraktClient
from .clients.tmdb_client import TMDBClient
from .cache import MetadataCache
from .credentials import CredentialProvider
from .dispatch import SyncDispatcher
from .engine import SyncEngine
from .enrich import EnrichmentEngine
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class SyncService:
    def __init__(self):
        self.running = True
        self.store = DocumentStore(settings.STORE_PATH)
        self.trakt = TraktClient()
        self.tmdb = TMDBClient()
        self.cache = MetadataCache(self.store, self.tmdb)
        self.enricher = EnrichmentEngine(self.cache, self.tmdb, self.store)
        self.credentials = CredentialProvider(self.store, self.trakt)
        self.engine = SyncEngine(self.store, self.trakt, self.enricher)
        self.dispatcher = SyncDispatcher(self.store, self.credentials, self.engine)

        # Link components to server module
        server.store = self.store
        server.enricher = self.enricher
        server.credentials = self.credentials
        server.dispatcher = self.dispatcher

    def check_config(self):
        if not settings.TRAKT_CLIENT_ID:
            logger.warning("TRAKT_CLIENT_ID is not set, Trakt requests will be rejected")
        if not self.tmdb.configured:
            logger.warning("TMDB_API_KEY is not set, enrichment is disabled")

    async def run_janitor(self):
        """Resets runs left in_progress by a crash."""
        logger.info("Janitor started")
        while self.running:
            try:
                reset = await self.dispatcher.reset_stale_runs()
                if reset:
                    logger.info(f"Janitor reset {reset} stale sync runs")
            except Exception as e:
                logger.error(f"Error in janitor: {e}", exc_info=True)

            await asyncio.sleep(settings.JANITOR_INTERVAL_SECONDS)

    async def start(self):
        self.check_config()

        config = uvicorn.Config(server.app, host=settings.HTTP_SERVER_HOST, port=settings.HTTP_SERVER_PORT, log_level="warning")
        janitor = asyncio.create_task(self.run_janitor())
        logger.info(f"Listening on {settings.HTTP_SERVER_HOST}:{settings.HTTP_SERVER_PORT}")

        try:
            await uvicorn.Server(config).serve()
        except asyncio.CancelledError:
            pass
        finally:
            self.running = False
            janitor.cancel()
            await self.dispatcher.wait_idle()
            await self.trakt.close()
            await self.tmdb.close()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

def run():
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")

if __name__ == "__main__":
    run()
