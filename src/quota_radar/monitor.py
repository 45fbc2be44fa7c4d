"""Foreground monitor for quota-radar."""

import asyncio
import os
import signal
from dataclasses import dataclass
from datetime import datetime

import httpx
import psutil
import structlog

from quota_radar import logging as console
from quota_radar.alerts import AlertTracker, AlertTransition
from quota_radar.client import TelemetryClient
from quota_radar.config import MIN_REFRESH_INTERVAL, Config
from quota_radar.errors import ConfigurationError, QuotaRadarError, SignalLost
from quota_radar.locator import ProcessLocator
from quota_radar.models import Snapshot
from quota_radar.probe import ConnectionProbe
from quota_radar.strategies import CommandStrategy, select_strategy

log = structlog.get_logger()


@dataclass
class MonitorState:
    """Runtime state of the monitor."""

    running: bool = False
    connected: bool = False
    discovery_count: int = 0
    snapshot_count: int = 0
    last_snapshot_time: datetime | None = None
    last_error: str | None = None

    def update_snapshot(self, snapshot: Snapshot) -> None:
        """Update state after a successful poll."""
        self.snapshot_count += 1
        self.connected = True
        self.last_error = None
        self.last_snapshot_time = snapshot.timestamp


class Monitor:
    """Wires discovery, polling and alerts together.

    boot(): discover -> engage -> start polling. A SignalLost malfunction
    triggers one immediate re-discovery. While offline, discovery is retried
    automatically with exponential backoff; SIGHUP reloads the config file
    and retries at once.
    """

    def __init__(
        self,
        config: Config,
        strategy: CommandStrategy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        show_console: bool = True,
    ):
        self.config = config
        self.state = MonitorState()
        self.show_console = show_console

        self.strategy = strategy or select_strategy()
        self.probe = ConnectionProbe(
            self.strategy,
            timeout=config.discovery.probe_timeout,
            command_timeout=config.discovery.command_timeout,
            transport=transport,
        )
        self.locator = ProcessLocator(self.strategy, self.probe, config.discovery)
        self.client = TelemetryClient(config, transport=transport)
        self.alerts = AlertTracker(config, notify=self._notify)
        self.offline_snapshot: Snapshot | None = None

        self.client.on_snapshot(self._on_snapshot)
        self.client.on_malfunction(self._on_malfunction)

        self._shutdown_event = asyncio.Event()
        self._rediscover_task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None
        self._reload_task: asyncio.Task | None = None
        self._offline_failures = 0
        self._owns_pid_file = False

    # --- Lifecycle ---

    async def boot(self) -> bool:
        """Discover the server and start polling. Returns False when offline."""
        self.state.discovery_count += 1
        if self.show_console:
            console.discovery_started(self.strategy.process_name, self.config.discovery.max_attempts)

        target = await self.locator.discover()
        if target is None:
            failure = self.locator.last_failure
            self.state.connected = False
            self.state.last_error = str(failure) if failure else "Language server not found"
            self.offline_snapshot = Snapshot.offline(self.state.last_error)
            log.error("monitor_offline", error=self.state.last_error)
            delay = self._schedule_retry()
            if self.show_console:
                console.discovery_failed(str(self.config.log_path), delay)
                console.diagnostics_output(self.locator.last_diagnostics or "")
            return False

        if self.show_console:
            console.discovery_found(target)
        self.offline_snapshot = None
        self._offline_failures = 0
        if self._retry_task is not None and self._retry_task is not asyncio.current_task():
            self._retry_task.cancel()
            self._retry_task = None
        self.client.engage(target)
        self.client.start_polling(
            self.config.polling.interval_seconds,
            on_skip=console.poll_skipped if self.show_console else None,
        )
        return True

    async def retry(self) -> bool:
        """Explicit retry from the offline state."""
        log.info("monitor_retry")
        self.client.stop()
        return await self.boot()

    async def rediscover(self, reason: str) -> bool:
        """Drop the current target and run discovery again."""
        log.warning("monitor_rediscover", reason=reason)
        if self.show_console:
            console.signal_lost(reason)
        self.client.stop()
        self.client.disengage()
        self.state.connected = False
        return await self.boot()

    def retry_delay(self) -> float:
        """Backoff before the next automatic retry: doubles per failure, capped."""
        discovery = self.config.discovery
        delay = discovery.offline_retry_delay * 2**self._offline_failures
        return min(delay, discovery.offline_retry_max_delay)

    def _schedule_retry(self) -> float | None:
        """Queue an automatic retry while running. Returns its delay, or None."""
        if not self.state.running:
            return None
        pending = self._retry_task
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            return None
        delay = self.retry_delay()
        self._offline_failures += 1
        self._retry_task = asyncio.create_task(self._retry_after(delay))
        log.info("offline_retry_scheduled", delay=delay, failures=self._offline_failures)
        return delay

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.retry()

    async def reload(self) -> bool:
        """Re-read the config file, apply it, and retry discovery if offline.

        An invalid file is logged and the current config stays in effect.
        """
        try:
            config = Config.load(self.config.path)
        except ValueError as e:
            log.error("config_reload_failed", error=str(e))
            if self.show_console:
                console.error(f"Config not reloaded: {e}")
            return False

        log.info("config_reloaded", path=str(config.config_path))
        if self.show_console:
            console.config_reloaded(str(config.config_path))
        self.reload_config(config)
        if not self.client.is_engaged:
            return await self.retry()
        return True

    def set_interval(self, seconds: int) -> None:
        """Change the refresh interval and restart polling if active.

        Raises:
            ConfigurationError: If seconds is below the minimum interval
        """
        if seconds < MIN_REFRESH_INTERVAL:
            raise ConfigurationError(
                f"refresh_interval must be >= {MIN_REFRESH_INTERVAL}, got {seconds}"
            )
        self.config.polling.refresh_interval = seconds
        log.info("refresh_interval_changed", seconds=seconds)
        if self.client.is_polling:
            self.client.start_polling(seconds)

    def reload_config(self, config: Config) -> Snapshot | None:
        """Adopt a reloaded config and re-derive the snapshot from cached data."""
        interval_changed = config.polling.refresh_interval != self.config.polling.refresh_interval
        self.config = config
        self.client.config = config
        self.alerts.config = config
        self.locator.config = config.discovery
        if interval_changed:
            self.set_interval(config.polling.refresh_interval)
        return self.client.reprocess()

    async def start(self) -> None:
        """Start the monitor and run until a shutdown signal."""
        from importlib.metadata import version

        log.info("monitor_starting", version=version("quota-radar"))
        log.info(
            "monitor_config",
            refresh_interval=self.config.polling.refresh_interval,
            thresholds=f"warn={self.config.thresholds.warning}/crit={self.config.thresholds.critical}",
            grouping=self.config.grouping.enabled,
            overlap_policy=self.config.polling.overlap_policy,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))
        if hasattr(signal, "SIGHUP"):
            loop.add_signal_handler(signal.SIGHUP, self._handle_reload)

        if self._check_already_running():
            log.error("monitor_already_running")
            raise RuntimeError("Monitor is already running")

        self._write_pid_file()
        self.state.running = True
        if self.show_console:
            console.monitor_started()

        await self.boot()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the monitor gracefully."""
        log.info("monitor_stopping")
        if self.show_console:
            console.monitor_stopping()
        self.state.running = False

        for task in (self._rediscover_task, self._retry_task, self._reload_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._rediscover_task = self._retry_task = self._reload_task = None

        self.client.stop()
        try:
            await asyncio.wait_for(
                self.client.wait_closed(), timeout=self.config.polling.http_timeout
            )
        except asyncio.TimeoutError:
            log.warning("poll_abandoned_on_stop")

        if self._owns_pid_file:
            self._remove_pid_file()
        log.info("monitor_stopped")

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        if self.show_console:
            console.signal_received(sig.name)
        self._shutdown_event.set()

    def _handle_reload(self) -> None:
        """Handle SIGHUP: reload config and retry discovery if offline."""
        log.info("signal_received", signal="SIGHUP")
        if self.show_console:
            console.signal_received("SIGHUP")
        if self._reload_task is None or self._reload_task.done():
            self._reload_task = asyncio.create_task(self.reload())

    # --- Client callbacks ---

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        self.state.update_snapshot(snapshot)
        self.alerts.update(snapshot)
        if self.show_console:
            console.quota_update(snapshot)

    def _on_malfunction(self, error: QuotaRadarError) -> None:
        self.state.last_error = str(error)
        if isinstance(error, SignalLost):
            if self._rediscover_task is None or self._rediscover_task.done():
                self._rediscover_task = asyncio.create_task(self.rediscover(str(error)))
            return
        if error.transient:
            # The next scheduled poll retries on its own
            log.info("transient_malfunction", error=str(error))
            return
        if self.show_console:
            console.malfunction(type(error).__name__, str(error))

    def _notify(self, transition: AlertTransition) -> None:
        if self.show_console:
            console.alert_transition(
                transition.label,
                transition.current.value,
                transition.percentage,
                transition.countdown,
            )

    # --- PID file ---

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._owns_pid_file = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file."""
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            self._owns_pid_file = False
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if another monitor owns the PID file.

        The recorded PID must belong to a live quota-radar process; a PID
        reused by something else after a reboot counts as stale.
        """
        if not self.config.pid_path.exists():
            return False

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            self._remove_pid_file()
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
            if "quota-radar" in cmdline_str or "quota_radar" in cmdline_str:
                log.info("monitor_already_running_verified", pid=pid)
                return True
            log.warning(
                "pid_file_stale",
                reason="different process",
                pid=pid,
                actual_process=proc.name(),
            )
            self._remove_pid_file()
            return False
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            self._remove_pid_file()
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            return True


async def run_monitor(config: Config | None = None) -> None:
    """Run the monitor until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    console.configure(config)
    monitor = Monitor(config)

    try:
        await monitor.start()
    except Exception as e:
        log.exception("monitor_crashed", error=str(e))
        raise
    finally:
        await monitor.stop()
