from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import cors_origins
from .routes import router
from .state import event_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
  event_store.load()
  logger.info("loaded %d events from %s", len(event_store.all_events()), event_store.data_file)
  yield


def create_app() -> FastAPI:
  app = FastAPI(title="smartcal", lifespan=_lifespan)
  if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
  app.include_router(router)

  @app.get("/health")
  def health():
    return {"ok": True}

  return app


app = create_app()
