import logging
from fastapi import FastAPI, Depends, HTTPException, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import BaseModel
from typing import List, Optional
from urllib.parse import urlencode
from .config import settings
from .credentials import CredentialProvider
from .dispatch import SyncDispatcher, TriggerRejected, check_user_id
from .enrich import EnrichmentEngine
from .errors import AuthError
from .store import DocumentStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Trakt Sync")

# Wired up by main.SyncService
store: Optional[DocumentStore] = None
dispatcher: Optional[SyncDispatcher] = None
enricher: Optional[EnrichmentEngine] = None
credentials: Optional[CredentialProvider] = None


class UserRequest(BaseModel):
    user_id: Optional[str] = None


class EnrichRequest(UserRequest):
    lists: Optional[List[str]] = None
    include_episodes: bool = False


def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")


def require_ready():
    if not dispatcher:
        raise HTTPException(status_code=503, detail="Service starting")


@app.exception_handler(TriggerRejected)
async def trigger_rejected_handler(request: Request, exc: TriggerRejected):
    body = {"error": exc.detail}
    if exc.sync_status is not None:
        body["status"] = jsonable_encoder(exc.sync_status)
    return JSONResponse(status_code=exc.status_code, content=body)


@app.get("/healthz")
def healthz():
    if not dispatcher:
        return {"status": "starting"}
    return {"status": "ok", "active_runs": dispatcher.active_runs}


@app.post("/api/trakt/sync", status_code=202, dependencies=[Depends(get_token), Depends(require_ready)])
async def trigger_sync(body: UserRequest):
    await dispatcher.trigger(body.user_id)
    return {"message": "Sync started", "user_id": body.user_id}


@app.get("/api/trakt/sync", dependencies=[Depends(get_token), Depends(require_ready)])
async def sync_status(user_id: Optional[str] = None):
    return await dispatcher.read_status(user_id)


@app.post("/api/trakt/enrich", dependencies=[Depends(get_token), Depends(require_ready)])
async def enrich(body: EnrichRequest):
    check_user_id(body.user_id)
    if not enricher.tmdb.configured:
        raise TriggerRejected(500, "TMDB API key not configured")

    counts = await enricher.enrich_user(body.user_id, body.lists, body.include_episodes)
    return {"message": "Enrichment completed", "user_id": body.user_id, "enriched": counts}


@app.get("/api/trakt/enrich", dependencies=[Depends(get_token), Depends(require_ready)])
async def enrichment_status(user_id: Optional[str] = None):
    check_user_id(user_id)
    return {"user_id": user_id, "lists": await enricher.enrichment_status(user_id)}


@app.get("/api/trakt/callback", dependencies=[Depends(require_ready)])
async def oauth_callback(code: Optional[str] = None, state: Optional[str] = None, error: Optional[str] = None):
    # state carries the user id
    if error:
        logger.error(f"Trakt OAuth error: {error}")
        return _app_redirect("/trakt/error", {"error": error}, {"error": error}, 400)
    if not code or not state:
        raise TriggerRejected(400, "Missing code or state parameter")
    check_user_id(state)

    try:
        await credentials.connect(state, code)
    except AuthError as e:
        logger.error(f"Failed to exchange code for token: {e}")
        failed = {"error": "token_exchange_failed"}
        return _app_redirect("/trakt/error", failed, failed, 502)

    return _app_redirect("/trakt/success", {"user_id": state},
                         {"message": "Trakt connected", "user_id": state}, 200)


def _app_redirect(path: str, query: dict, fallback: dict, fallback_status: int):
    if settings.APP_URL:
        return RedirectResponse(f"{settings.APP_URL.rstrip('/')}{path}?{urlencode(query)}")
    return JSONResponse(status_code=fallback_status, content=fallback)


@app.post("/api/trakt/disconnect", dependencies=[Depends(get_token), Depends(require_ready)])
async def disconnect(body: UserRequest):
    check_user_id(body.user_id)
    if not await store.get(f"users/{body.user_id}"):
        raise TriggerRejected(404, "User not found")

    await credentials.disconnect(body.user_id)
    return {"message": "Trakt disconnected successfully", "user_id": body.user_id}


@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not dispatcher or not store:
        return ""

    users = [path for path in store.docs if path.count("/") == 1 and path.startswith("users/")]
    seasons = [path for path in store.docs if path.startswith("tmdb_cache/tv/seasons/")]
    in_progress = sum(
        1 for path in users
        if (store.docs[path].get("trakt_sync_status") or {}).get("status") == "in_progress"
    )
    lines = [
        f'traktsync_active_runs {dispatcher.active_runs}',
        f'traktsync_users {len(users)}',
        f'traktsync_runs_in_progress {in_progress}',
        f'traktsync_cached_seasons {len(seasons)}',
    ]
    return "\n".join(lines)
