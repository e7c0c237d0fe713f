"""FastAPI entry-point exposing arena controls."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from arena.api.events import router as events_router
from arena.api.sessions import router as sessions_router
from arena.config import config
from arena.logging_config import setup_logging
from arena.runtime import get_controller


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    setup_logging(config.log_level)
    yield
    # Shutdown: pause whatever mission is still running
    await get_controller().shutdown()


app = FastAPI(title="Agent Arena", lifespan=lifespan)
app.include_router(sessions_router)
app.include_router(events_router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


def run() -> None:
    import uvicorn

    uvicorn.run("arena.main:app", host="127.0.0.1", port=config.port)


if __name__ == "__main__":
    run()
