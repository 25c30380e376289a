import asyncio
import traceback
from typing import Optional

from fastapi import FastAPI
from hypercorn.asyncio import serve
from hypercorn.config import Config as HyperConfig

from .endpoints.devices import device_router
from .routes import status_router
from ..core.config_manager import APIConfig
from ..core.engine import ControlEngine
from ..core.event_manager import EventManager
from ..core.interface import ControlInterface
from ..utils.exceptions import InitializationError
from ..utils.logging import get_logger


class AppState:
    """Holds application state and components"""
    def __init__(self):
        self.engine: Optional[ControlEngine] = None
        self.interface: Optional[ControlInterface] = None
        self.event_manager: Optional[EventManager] = None


class APIServer:
    """Handles API server initialization and management"""

    def __init__(self, config: APIConfig, shutdown_event: asyncio.Event, app_state: AppState):
        self.config = config
        self.shutdown_event = shutdown_event
        self.logger = get_logger("keylightd.api")
        self.app: Optional[FastAPI] = None
        self.app_state = app_state

    def initialize(self) -> FastAPI:
        """Initialize FastAPI application with routes"""
        try:
            self.app = FastAPI(
                title="keylightd",
                description="Discovery and control of networked key lights",
                version="0.1.0"
            )

            # Store app state for dependency injection
            self.app.state.components = self.app_state

            self.app.include_router(device_router, prefix="/api/v1")
            self.app.include_router(status_router, prefix="/api/v1")

            return self.app
        except Exception:
            raise InitializationError(f"Failed to initialize API server: {traceback.format_exc()}")

    async def start(self):
        """Serve until the shutdown event is set"""
        if not self.app:
            self.initialize()

        hypercorn_config = HyperConfig()
        hypercorn_config.bind = [f"{self.config.host}:{self.config.port}"]
        # Signals are handled by the daemon, not by hypercorn
        hypercorn_config.graceful_timeout = 1.0

        async def shutdown_trigger():
            await self.shutdown_event.wait()

        self.logger.info(f"Starting API server on {self.config.host}:{self.config.port}")
        try:
            await serve(self.app, hypercorn_config, shutdown_trigger=shutdown_trigger)
        except Exception:
            self.logger.error(f"API server failed: {traceback.format_exc()}")
            raise
