"""Main entry point for scrobble-relay."""

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from .api import health_router, webhook_router
from .config import Config, get_config, load_config
from .database import Database, close_db, get_db
from .models import User
from .sync import TokenRefresher, build_engine


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # Silence noisy third-party loggers
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def init_config() -> None:
    """Initialize configuration from file.

    Loads config from CONFIG_PATH env var, /config/config.yaml, or ./config.yaml.
    Sets up logging based on config.
    """
    config_path = os.environ.get("CONFIG_PATH", "/config/config.yaml")

    # Allow local development with config.yaml in current directory
    if not Path(config_path).exists():
        local_config = Path("config.yaml")
        if local_config.exists():
            config_path = str(local_config)
        else:
            print(f"Error: Configuration file not found: {config_path}")
            print("Create a config.yaml file or set CONFIG_PATH environment variable")
            sys.exit(1)

    config = load_config(config_path)
    setup_logging(config.logging.level)

    logger = logging.getLogger(__name__)
    logger.info("Loaded configuration from %s", config_path)
    logger.info("Trakt %s", "configured" if config.trakt.configured else "not configured")


async def seed_users(db: Database, config: Config) -> int:
    """Load the user directory from configuration into the database."""
    for seed in config.users:
        await db.upsert_user(User.model_validate(seed.model_dump()))
    return len(config.users)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    logger = logging.getLogger(__name__)

    # Startup
    logger.info("Starting scrobble-relay...")

    db = await get_db()
    logger.info("Database initialized")

    config = get_config()
    seeded = await seed_users(db, config)
    logger.info("User directory loaded (%d configured users)", seeded)

    engine = build_engine(db, config)
    refresher = TokenRefresher(db, engine.routes)
    await refresher.start(interval_seconds=config.sync.token_refresh_interval_hours * 3600)

    # Store engine in app state for access by routers
    app.state.engine = engine
    app.state.refresher = refresher

    yield

    # Shutdown
    logger.info("Shutting down scrobble-relay...")
    await refresher.stop()
    await engine.close()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    # Initialize config before creating app
    init_config()

    app = FastAPI(
        title="scrobble-relay",
        description="Relays Plex and Jellyfin watch events to TVTime and Trakt",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health_router)  # /healthz, /readyz
    app.include_router(webhook_router)  # /webhooks/plex, /webhooks/jellyfin

    return app


def main() -> None:
    """Main entry point."""
    app = create_app()
    config = get_config()

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
