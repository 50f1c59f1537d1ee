"""
Background loops for gatewayd.

The watchdog probes the gateway periodically, relaunching it if the process
crashed, and prunes old lifecycle events. The sync loop pushes config and
skills to the backup store on a fixed interval.
"""

import asyncio
import logging

from . import backup
from .config import Config, config
from .exceptions import GatewayLaunchFailed
from .models import db_ready, prune_events, record_event
from .process import GatewaySupervisor, supervisor

logger = logging.getLogger(__name__)


class GatewayMonitor:
    """Watches the gateway process and keeps the backup store current."""

    def __init__(self, gateway: GatewaySupervisor = supervisor, settings: Config = config):
        self.gateway = gateway
        self.settings = settings
        self.expect_running = False
        self.crash_restarts = 0
        self._running = False
        self._tasks: list[asyncio.Task] = []

    async def start(self):
        """Start the watchdog and sync loops."""
        if self._running:
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._watchdog_loop()),
            asyncio.create_task(self._sync_loop()),
        ]
        logger.info("Gateway monitor started")

    async def stop(self):
        """Stop both loops."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Gateway monitor stopped")

    async def _watchdog_loop(self):
        while self._running:
            try:
                await asyncio.to_thread(self.check)
            except Exception as e:
                logger.error(f"Error in gateway watchdog: {e}")

            await asyncio.sleep(self.settings.monitor_interval)

    async def _sync_loop(self):
        while self._running:
            await asyncio.sleep(self.settings.backup_sync_interval)
            try:
                await asyncio.to_thread(backup.push, None, self.settings)
            except Exception as e:
                logger.error(f"Error in backup sync: {e}")

    def check(self):
        """One watchdog pass."""
        if db_ready():
            prune_events(self.settings.log_retention_days)

        if self.gateway.restart_in_progress:
            return

        process = self.gateway.find_existing()
        if process is not None:
            if self.gateway.is_healthy(process):
                self.crash_restarts = 0
            return

        if not self.expect_running:
            return

        if self.crash_restarts >= self.settings.max_restart_attempts:
            logger.error("Gateway exceeded max restart attempts, giving up until the next restart request")
            return

        self.crash_restarts += 1
        logger.warning(f"Gateway is not running, relaunching (attempt {self.crash_restarts})")
        record_event("crash", f"Gateway not running, relaunch attempt {self.crash_restarts}")
        try:
            self.gateway.ensure_running()
        except GatewayLaunchFailed as e:
            logger.error(f"Gateway relaunch failed: {e}")


# Global monitor instance
gateway_monitor = GatewayMonitor()
