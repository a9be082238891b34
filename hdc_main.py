#!/usr/bin/env python3
"""
HDC Main Application
Version: 1.0.0

Runs one deck session as a long-lived service:
- Logging to file and stdout
- Configuration load and validation
- Deck reachability check before connecting
- Transport plug-in loaded from configuration
- Periodic session health logging
- Clean shutdown on SIGINT / SIGTERM
"""

import sys
import time
import signal
import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional

from hdc_config import load_or_create_config, validate_configuration, check_device_reachable
from hdc_connection import DeviceConnectionError, load_transport_class
from hdc_session import DeviceSession


class SystemState(Enum):
    """Application lifecycle states."""
    INITIALIZING = "initializing"
    RUNNING = "running"
    ERROR = "error"
    SHUTTING_DOWN = "shutting_down"


class HDCApplication:
    """Deck controller application coordinator."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config if config is not None else load_or_create_config()
        self.setup_logging()

        self.system_state = SystemState.INITIALIZING
        self.exit_flag = False
        self.session: Optional[DeviceSession] = None

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def setup_logging(self):
        """Configure logging system."""
        system = self.config.get('system', {})
        log_dir = Path(system.get('log_dir', '/var/log/hdc'))
        log_dir.mkdir(parents=True, exist_ok=True)

        logging.basicConfig(
            level=getattr(logging, str(system.get('log_level', 'INFO')).upper(), logging.INFO),
            format='%(asctime)s - %(levelname)s - [%(name)s] - %(message)s',
            handlers=[
                logging.FileHandler(log_dir / "hdc_main.log"),
                logging.StreamHandler(sys.stdout)
            ]
        )

        self.logger = logging.getLogger("HDC-Main")
        self.logger.info("="*60)
        self.logger.info("HDC Deck Controller Starting")
        self.logger.info("="*60)

    def _signal_handler(self, sig, frame):
        """Handle shutdown signals."""
        self.logger.info(f"Received signal {sig} - initiating shutdown")
        self.exit_flag = True
        self.system_state = SystemState.SHUTTING_DOWN

    def create_session(self) -> DeviceSession:
        """Validate configuration and build the session with its transport plug-in."""
        errors = validate_configuration(self.config)
        if errors:
            for error in errors:
                self.logger.error(f"Config validation: {error}")
            raise ValueError(f"{len(errors)} configuration errors")
        self.logger.info("Configuration validation: OK")

        device = self.config['device']
        if not device.get('transport'):
            raise ValueError("No deck transport configured (device.transport)")

        transport_class = load_transport_class(device['transport'])
        self.logger.info(f"Using transport {transport_class.__name__}")
        return DeviceSession(transport_class(), self.config, logging.getLogger("HDC-Session"))

    async def run_main_loop(self) -> bool:
        """Connect to the deck and keep the session alive until shutdown."""
        self.logger.info("Starting main application loop...")
        device = self.config['device']

        if not check_device_reachable(device['host'], device['port'], device.get('reachability_timeout', 3)):
            self.logger.warning(f"Deck at {device['host']}:{device['port']} not reachable - trying anyway")

        try:
            self.session = self.create_session()
            await self.session.connect()
        except (ImportError, TypeError, ValueError, DeviceConnectionError) as e:
            self.logger.error(f"Session startup failed: {e}")
            self.system_state = SystemState.ERROR
            return False

        self.system_state = SystemState.RUNNING
        health_interval = self.config['system'].get('health_interval', 60)
        last_health = time.time()

        try:
            while not self.exit_flag:
                await asyncio.sleep(1)

                if not self.session.connected:
                    self.logger.error("Deck connection lost - exiting (reconnect policy is external)")
                    self.system_state = SystemState.ERROR
                    return False

                if time.time() - last_health >= health_interval:
                    self.log_system_health()
                    last_health = time.time()

        finally:
            self.logger.info("Shutting down HDC Main Application...")
            self.session.disconnect()

        return True

    def log_system_health(self):
        """Log session health information."""
        health = self.session.get_health()
        cue = health['cue']

        self.logger.info(f"System Health - State: {self.system_state.value}")
        self.logger.info(f"  Deck: {health['model'] or 'unknown'} ({health['model_id']}) - {health['status']}")
        self.logger.info(f"  Timecode: {health['timecode_mode']} (polling: {health['polling']})")
        self.logger.info(f"  Commands: {health['commands_sent']} sent, {health['commands_failed']} failed, "
                         f"{health['commands_timed_out']} timed out")
        self.logger.info(f"  Cue: {cue['phase']} (stop armed: {cue['stop_armed']})")

    async def run(self) -> int:
        """Main application entry point."""
        try:
            success = await self.run_main_loop()
            if success:
                self.logger.info("HDC Main Application completed successfully")
                return 0
            else:
                self.logger.error("HDC Main Application failed")
                return 1

        except Exception as e:
            self.logger.error(f"Unhandled error in main application: {e}")
            return 1


def main():
    """Main entry point."""
    try:
        app = HDCApplication()
        return asyncio.run(app.run())
    except KeyboardInterrupt:
        logging.info("Application interrupted by user")
        return 130
    except Exception as e:
        logging.error(f"Unhandled application error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
