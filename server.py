"""
DirtLeague — Server entry point.

Starts the FastAPI server with the API routes and the background rally poller.
Usage:
    python server.py
    # or: uvicorn server:app --host 0.0.0.0 --port 8080 --reload
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from results.config import load_config
from results.database import get_connection, get_setting, init_db
from results.dirt_client import DirtClient
from results.poller import RallyPoller
from api.routes import router as api_router

logger = logging.getLogger("dirtleague")

BASE_DIR = Path(__file__).parent
PORT = 8080


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load config, init database, set up poller. Shutdown: clean up."""
    settings = load_config()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db_path = Path(settings.db_path) if settings.db_path else None
    conn = get_connection(db_path)
    init_db(conn)
    enabled = get_setting(conn, "poller_enabled", "false") == "true"
    conn.close()

    client = DirtClient(
        base_url=settings.base_url,
        timeout=settings.request_timeout,
        user_agent=settings.user_agent,
    )
    app.state.db_path = db_path
    app.state.poller = RallyPoller(client, db_path=db_path,
                                   interval=settings.poll_interval)

    if settings.autostart_poller or enabled:
        await app.state.poller.start()
        logger.info("Poller started, every %ss", settings.poll_interval)

    yield

    # Shutdown
    await app.state.poller.stop()
    await client.aclose()


app = FastAPI(title="DirtLeague", lifespan=lifespan)
app.include_router(api_router, prefix="/api")


if __name__ == "__main__":
    import uvicorn

    print(f"DirtLeague server — http://localhost:{PORT}/api/status")
    uvicorn.run("server:app", host="0.0.0.0", port=PORT, log_level="warning")
