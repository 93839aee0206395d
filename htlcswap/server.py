#!/usr/bin/env python3
"""
htlcswap server

Runs a coordinator with its swap watcher and exposes:

  GET  /api/status          - Health check
  GET  /api/swaps           - List swaps
  GET  /api/swap/{id}       - Swap state, error category and hint
  POST /api/secret          - Resolver inbox for disclosed secrets

Configuration comes from the environment (see SwapSettings.from_env).
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .commitment import HashCommitment
from .config import SwapSettings
from .errors import SwapError, exit_code_for
from .factory import build_coordinator
from .routes import router
from .swap.registry import SwapRegistry
from .swap.secret_channel import HttpSecretChannel, InMemorySecretChannel, parse_endpoints
from .swap.watcher import SwapWatcher, WatcherConfig

log = logging.getLogger(__name__)


def create_app(registry: SwapRegistry, inbox: InMemorySecretChannel,
               commitment: HashCommitment, watcher: Optional[SwapWatcher] = None) -> FastAPI:
    """Build the FastAPI app. The watcher, if given, runs for the app's lifetime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if watcher is not None:
            watcher.start()
        yield
        if watcher is not None:
            watcher.stop()

    app = FastAPI(
        title="htlcswap",
        description="HTLC atomic swap coordinator",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.inbox = inbox
    app.state.commitment = commitment
    app.include_router(router)
    return app


def main():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    import uvicorn

    try:
        settings = SwapSettings.from_env()
        inbox = InMemorySecretChannel()
        channel = HttpSecretChannel(parse_endpoints(settings.secret_endpoints), inbox=inbox)
        coordinator = build_coordinator(settings, channel=channel)
    except SwapError as e:
        log.error(f"Startup failed: {e}")
        raise SystemExit(exit_code_for(e))

    watcher = SwapWatcher(coordinator, WatcherConfig(poll_interval=settings.coordinator.poll_interval))
    app = create_app(coordinator.registry, inbox, coordinator.commitment, watcher)

    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting htlcswap on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
