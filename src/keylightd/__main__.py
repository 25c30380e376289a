# src/keylightd/__main__.py
import argparse
import asyncio
import os
import signal
import sys
import traceback
from pathlib import Path
from typing import List, Optional

from keylightd.adapters.http import ElgatoHTTPClient
from keylightd.adapters.mqtt import MQTTEventSink
from keylightd.api.server import APIServer, AppState
from keylightd.core.config_manager import ConfigManager, KeylightdConfig, create_default_config
from keylightd.core.engine import ControlEngine
from keylightd.core.event_manager import ALL_EVENTS, EventManager, LogEventSink
from keylightd.core.interface import ControlInterface
from keylightd.discovery.factory import DiscoveryFactory
from keylightd.utils.exceptions import ConfigurationError, InitializationError
from keylightd.utils.logging import get_logger, setup_logging

DEFAULT_CONFIG_PATH = Path("/etc/keylightd/config.yml")
CONFIG_ENV_VAR = "KEYLIGHTD_CONFIG"


class KeylightDaemon:
    """Main keylightd application class"""

    def __init__(self, config: KeylightdConfig):
        self.config = config
        self.logger = get_logger("keylightd")
        self.shutdown_event = asyncio.Event()
        self.app_state = AppState()
        self.api_server = APIServer(self.config.api, self.shutdown_event, self.app_state)
        self.mqtt_sink: Optional[MQTTEventSink] = None
        self._event_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None

    async def initialize_components(self):
        """Initialize all application components"""
        try:
            events = EventManager()
            self.app_state.event_manager = events
            self._event_task = asyncio.create_task(events.process_events(), name="events")
            await events.subscribe(ALL_EVENTS, LogEventSink())

            if self.config.events.mqtt.enabled:
                self.mqtt_sink = MQTTEventSink(self.config.events.mqtt)
                await self.mqtt_sink.connect()
                await events.subscribe(ALL_EVENTS, self.mqtt_sink)

            client = ElgatoHTTPClient(timeout=self.config.control.request_timeout)
            sources = DiscoveryFactory.create_all(self.config.discovery, client)
            self.logger.info(f"Discovery sources: {', '.join(s.name for s in sources) or 'none'}")

            engine = ControlEngine(
                client,
                control=self.config.control,
                discovery=self.config.discovery,
                sources=sources,
                events=events,
            )
            self.app_state.engine = engine
            self.app_state.interface = ControlInterface(engine)
            await engine.start()

            self.api_server.initialize()
            self.logger.info("All components initialized successfully")
        except ConfigurationError:
            raise
        except Exception:
            raise InitializationError(f"Failed to initialize components: {traceback.format_exc()}")

    async def shutdown(self):
        """Gracefully shutdown all components"""
        if self.shutdown_event.is_set():
            return
        self.logger.info("Initiating shutdown sequence")
        try:
            if self.app_state.engine:
                await self.app_state.engine.shutdown()
            if self.app_state.event_manager:
                try:
                    await self.app_state.event_manager.flush(timeout=1.0)
                except asyncio.TimeoutError:
                    self.logger.warning("Pending events dropped at shutdown")
                self.app_state.event_manager.stop()
            if self._event_task:
                self._event_task.cancel()
            if self.mqtt_sink:
                await self.mqtt_sink.disconnect()
            self.logger.info("Shutdown completed successfully")
        except Exception:
            self.logger.error(f"Error during shutdown: {traceback.format_exc()}")
        finally:
            self.shutdown_event.set()

    def handle_signals(self):
        """Set up signal handlers for graceful shutdown"""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signal.Signals(signum).name}")
            if self._shutdown_task is None:
                self._shutdown_task = asyncio.create_task(self.shutdown())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler, sig)

    async def run(self) -> int:
        """Main application entry point"""
        try:
            self.handle_signals()
            await self.initialize_components()
            await self.api_server.start()
            if self._shutdown_task:
                await self._shutdown_task
            return 0
        except (ConfigurationError, InitializationError):
            self.logger.error(f"Initialization error: {traceback.format_exc()}")
        except Exception:
            self.logger.error(f"Unexpected error: {traceback.format_exc()}")
        await self.shutdown()
        return 1


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="keylightd", description="Key light discovery and control daemon")
    parser.add_argument("-c", "--config", type=Path, default=None,
                        help=f"configuration file (default: ${CONFIG_ENV_VAR} or {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--write-default-config", action="store_true",
                        help="write an example configuration file and exit")
    return parser.parse_args(argv)


def load_config(explicit: Optional[Path]) -> KeylightdConfig:
    """Load the configuration, falling back to built-in defaults when no file is set up"""
    path = explicit or (Path(os.environ[CONFIG_ENV_VAR]) if os.environ.get(CONFIG_ENV_VAR) else None)
    if path is not None:
        return ConfigManager.load_config(path)
    if DEFAULT_CONFIG_PATH.exists():
        return ConfigManager.load_config(DEFAULT_CONFIG_PATH)
    return KeylightdConfig()


def main(argv: Optional[List[str]] = None):
    """Application entry point"""
    args = parse_args(argv)
    if args.write_default_config:
        target = args.config or DEFAULT_CONFIG_PATH
        if create_default_config(target):
            print(f"Created default config at {target}")
        else:
            print(f"{target} already exists, not overwriting")
        return

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        setup_logging({})
        get_logger("keylightd").error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(config.logging.model_dump())
    daemon = KeylightDaemon(config)
    sys.exit(asyncio.run(daemon.run()))


if __name__ == "__main__":
    main()
