"""
Relay App Factory

Builds the FastAPI application serving the rendezvous routes and runs a
background task that purges expired sessions.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from medsync.config import MedSyncSettings, get_settings
from medsync.relay.routes import SessionEventHub, router
from medsync.relay.store import SessionStore

logger = logging.getLogger(__name__)


async def _purge_loop(store: SessionStore, interval: float) -> None:
    """Periodically delete expired sessions"""
    while True:
        try:
            await asyncio.sleep(interval)
            removed = store.purge_expired()
            if removed:
                logger.info(f"Purged {removed} expired sync sessions")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Error in purge loop: {e}")


def create_app(settings: Optional[MedSyncSettings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(_purge_loop(app.state.session_store, settings.purge_interval_seconds))
        logger.info("Sync relay started")
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Sync relay stopped")

    app = FastAPI(title="MedSync Relay", lifespan=lifespan)
    app.state.session_store = SessionStore(settings.relay_db_path, ttl_seconds=settings.session_ttl_seconds)
    app.state.event_hub = SessionEventHub()
    app.include_router(router)
    return app


def run(settings: Optional[MedSyncSettings] = None) -> None:
    """Serve the relay with uvicorn"""
    import uvicorn

    settings = settings or get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.relay_host,
        port=settings.relay_port,
        ws="websockets",
        ws_ping_interval=20,
        ws_ping_timeout=20,
        log_level=settings.log_level.lower(),
    )
