from __future__ import annotations

import logging
import os
from datetime import UTC, datetime

from aiohttp import ClientSession, web

from api.status import setup_status_routes
from config import AgentConfig, load_config
from observability import observability_middleware, setup_logging
from services import Services, bootstrap

APP_VERSION = os.getenv("APP_VERSION") or "dev"


class UploaderAgent:
    """Owns the network resources behind the service graph."""

    def __init__(self, services: Services):
        self.services = services
        self.session: ClientSession | None = None
        self.running = False

    async def start(self) -> None:
        if self.running:
            return
        services = self.services
        self.session = ClientSession()
        services.transport.session = self.session
        self.running = True
        await services.scheduler.start()
        if services.config.calls_enabled:
            await services.channel.start(services.config.current_view)
        else:
            logging.info("CALL notifications disabled by configuration")

    async def close(self) -> None:
        if not self.running:
            return
        self.running = False
        services = self.services
        await services.channel.stop()
        await services.scheduler.stop()
        services.transport.session = None
        if self.session:
            await self.session.close()
            self.session = None


def create_app(config: AgentConfig | None = None) -> web.Application:
    setup_logging()
    config = config or load_config()
    services, created = bootstrap(config)
    if not created:
        logging.warning("Service graph already initialised, reusing it")

    app = web.Application(
        client_max_size=services.config.max_recording_bytes + 1024,
        middlewares=[observability_middleware],
    )
    agent = UploaderAgent(services)
    app["agent"] = agent
    app["started_at"] = datetime.now(UTC)
    app["version"] = APP_VERSION
    setup_status_routes(app, services)

    async def start_background(app: web.Application) -> None:
        logging.info("Application startup version=%s", APP_VERSION)
        try:
            await agent.start()
        except Exception:
            logging.exception("Error during startup")
            raise

    async def cleanup_background(app: web.Application) -> None:
        await agent.close()

    app.on_startup.append(start_background)
    app.on_cleanup.append(cleanup_background)

    return app


if __name__ == "__main__":
    _config = load_config()
    web.run_app(create_app(_config), host=_config.status_host, port=_config.status_port)
