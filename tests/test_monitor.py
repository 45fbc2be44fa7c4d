"""Tests for the foreground monitor."""

import asyncio
import os
from unittest.mock import AsyncMock, MagicMock, patch

import psutil
import pytest

from quota_radar.alerts import AlertState
from quota_radar.config import Config
from quota_radar.errors import (
    ConfigurationError,
    DiscoveryFailure,
    PayloadCorrupt,
    SignalLost,
    TransportTimeout,
)
from quota_radar.models import Snapshot
from quota_radar.monitor import Monitor, MonitorState
from quota_radar.strategies import UnixStrategy
from tests.conftest import NOW, make_model, make_target


def make_monitor(config: Config, show_console: bool = False) -> Monitor:
    return Monitor(
        config,
        strategy=UnixStrategy("linux", "language_server_linux"),
        show_console=show_console,
    )


def test_monitor_state_initial():
    state = MonitorState()
    assert not state.running
    assert not state.connected
    assert state.snapshot_count == 0
    assert state.last_snapshot_time is None


def test_monitor_state_update_snapshot():
    state = MonitorState(last_error="earlier failure")
    snapshot = Snapshot(timestamp=NOW, is_connected=True)

    state.update_snapshot(snapshot)

    assert state.snapshot_count == 1
    assert state.connected
    assert state.last_error is None
    assert state.last_snapshot_time == NOW


def test_monitor_init_wires_components(config):
    monitor = make_monitor(config)
    assert monitor.locator.strategy is monitor.strategy
    assert monitor.probe.strategy is monitor.strategy
    assert monitor.client.config is config
    assert monitor.offline_snapshot is None


class TestBoot:
    """Discovery to polling hand-off."""

    @pytest.mark.asyncio
    async def test_boot_engages_and_polls(self, config):
        monitor = make_monitor(config)
        monitor.locator.discover = AsyncMock(return_value=make_target())
        monitor.client.start_polling = MagicMock()

        assert await monitor.boot()

        assert monitor.client.target == make_target()
        monitor.client.start_polling.assert_called_once()
        assert monitor.client.start_polling.call_args.args[0] == 120.0
        assert monitor.offline_snapshot is None
        assert monitor.state.discovery_count == 1

    @pytest.mark.asyncio
    async def test_boot_failure_goes_offline(self, config):
        monitor = make_monitor(config)
        monitor.locator.discover = AsyncMock(return_value=None)
        monitor.locator.last_failure = DiscoveryFailure("Language server not found")
        monitor.client.start_polling = MagicMock()

        assert not await monitor.boot()

        monitor.client.start_polling.assert_not_called()
        assert not monitor.client.is_engaged
        assert monitor.offline_snapshot is not None
        assert not monitor.offline_snapshot.is_connected
        assert monitor.offline_snapshot.error_message == "Language server not found"

    @pytest.mark.asyncio
    async def test_boot_failure_prints_diagnostics(self, config):
        monitor = make_monitor(config, show_console=True)
        monitor.locator.discover = AsyncMock(return_value=None)
        monitor.locator.last_diagnostics = "PID 1 init"

        with patch("quota_radar.monitor.console") as console:
            await monitor.boot()

        console.discovery_failed.assert_called_once_with(str(config.log_path), None)
        console.diagnostics_output.assert_called_once_with("PID 1 init")

    @pytest.mark.asyncio
    async def test_retry_boots_again(self, config):
        monitor = make_monitor(config)
        monitor.locator.discover = AsyncMock(side_effect=[None, make_target()])
        monitor.client.start_polling = MagicMock()

        assert not await monitor.boot()
        assert await monitor.retry()
        assert monitor.state.discovery_count == 2
        assert monitor.client.is_engaged


class TestMalfunctions:
    """Routing of classified poll failures."""

    @pytest.mark.asyncio
    async def test_signal_lost_triggers_rediscover(self, config):
        monitor = make_monitor(config)
        monitor.rediscover = AsyncMock(return_value=True)

        monitor._on_malfunction(SignalLost("Connection failed: refused"))
        await monitor._rediscover_task

        monitor.rediscover.assert_awaited_once_with("Connection failed: refused")

    @pytest.mark.asyncio
    async def test_one_rediscover_at_a_time(self, config):
        monitor = make_monitor(config)
        release = asyncio.Event()

        async def slow_rediscover(reason):
            await release.wait()
            return True

        monitor.rediscover = AsyncMock(side_effect=slow_rediscover)
        monitor._on_malfunction(SignalLost("first"))
        await asyncio.sleep(0)
        monitor._on_malfunction(SignalLost("second"))

        release.set()
        await monitor._rediscover_task
        assert monitor.rediscover.await_count == 1

    @pytest.mark.asyncio
    async def test_rediscover_drops_target(self, config):
        monitor = make_monitor(config)
        monitor.client.engage(make_target())
        monitor.boot = AsyncMock(return_value=False)

        assert not await monitor.rediscover("server restarted")

        assert not monitor.client.is_engaged
        assert not monitor.state.connected
        monitor.boot.assert_awaited_once()

    def test_transient_errors_are_silent(self, config):
        monitor = make_monitor(config, show_console=True)
        with patch("quota_radar.monitor.console") as console:
            monitor._on_malfunction(TransportTimeout("Request timed out"))
        console.malfunction.assert_not_called()
        assert monitor._rediscover_task is None
        assert monitor.state.last_error == "Request timed out"

    def test_corrupt_payload_is_shown(self, config):
        monitor = make_monitor(config, show_console=True)
        with patch("quota_radar.monitor.console") as console:
            monitor._on_malfunction(PayloadCorrupt("Signal corrupted"))
        console.malfunction.assert_called_once_with("PayloadCorrupt", "Signal corrupted")
        assert monitor._rediscover_task is None


class TestSnapshots:
    """Snapshot delivery into state and alerts."""

    def test_snapshot_updates_state_and_alerts(self, config):
        monitor = make_monitor(config)
        snapshot = Snapshot(
            timestamp=NOW, is_connected=True, models=(make_model("A", fraction=0.05),)
        )

        monitor._on_snapshot(snapshot)

        assert monitor.state.snapshot_count == 1
        assert monitor.alerts.state_of("A") is AlertState.CRITICAL

    def test_alert_goes_to_console(self, config):
        monitor = make_monitor(config, show_console=True)
        snapshot = Snapshot(
            timestamp=NOW, is_connected=True, models=(make_model("A", fraction=0.0),)
        )
        with patch("quota_radar.monitor.console") as console:
            monitor._on_snapshot(snapshot)

        console.alert_transition.assert_called_once()
        label, state, percentage, _ = console.alert_transition.call_args.args
        assert (label, state, percentage) == ("A", "exhausted", 0.0)
        console.quota_update.assert_called_once_with(snapshot)


class TestSettings:
    """Runtime setting changes."""

    def test_set_interval_rejects_below_minimum(self, config):
        monitor = make_monitor(config)
        with pytest.raises(ConfigurationError):
            monitor.set_interval(5)
        assert config.polling.refresh_interval == 120

    def test_set_interval_restarts_polling(self, config):
        monitor = make_monitor(config)
        monitor.client.start_polling = MagicMock()
        with patch.object(type(monitor.client), "is_polling", new=True):
            monitor.set_interval(30)
        assert config.polling.refresh_interval == 30
        monitor.client.start_polling.assert_called_once_with(30)

    def test_reload_config_rebinds_components(self, config):
        monitor = make_monitor(config)
        monitor.client.reprocess = MagicMock(return_value=None)
        fresh = Config(path=config.path)

        monitor.reload_config(fresh)

        assert monitor.config is fresh
        assert monitor.client.config is fresh
        assert monitor.alerts.config is fresh
        assert monitor.locator.config is fresh.discovery

    def test_reload_config_restarts_polling_on_interval_change(self, config):
        monitor = make_monitor(config)
        monitor.client.reprocess = MagicMock(return_value=None)
        monitor.client.start_polling = MagicMock()
        fresh = Config(path=config.path)
        fresh.polling.refresh_interval = 30

        with patch.object(type(monitor.client), "is_polling", new=True):
            monitor.reload_config(fresh)

        monitor.client.start_polling.assert_called_once_with(30)


class TestReload:
    """SIGHUP config reload."""

    @pytest.mark.asyncio
    async def test_reload_applies_file_and_retries_when_offline(self, config):
        monitor = make_monitor(config)
        monitor.retry = AsyncMock(return_value=True)
        monitor.client.reprocess = MagicMock(return_value=None)
        on_disk = Config(path=config.path)
        on_disk.update_thresholds(50, 20)

        assert await monitor.reload()

        assert monitor.config.thresholds.warning == 50
        assert monitor.alerts.config is monitor.config
        monitor.client.reprocess.assert_called_once()
        monitor.retry.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reload_while_engaged_does_not_rediscover(self, config):
        monitor = make_monitor(config)
        monitor.client.engage(make_target())
        monitor.retry = AsyncMock()

        assert await monitor.reload()
        monitor.retry.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_file_keeps_current_config(self, config):
        config.path.write_text("[thresholds]\nwarning = 10\ncritical = 20\n")
        monitor = make_monitor(config)
        monitor.retry = AsyncMock()

        assert not await monitor.reload()

        assert monitor.config is config
        monitor.retry.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sighup_handler_schedules_reload(self, config):
        monitor = make_monitor(config)
        monitor.reload = AsyncMock(return_value=True)

        monitor._handle_reload()
        await monitor._reload_task

        monitor.reload.assert_awaited_once()


class TestOfflineRetry:
    """Automatic retry while discovery keeps failing."""

    def test_backoff_doubles_and_caps(self, config):
        config.discovery.offline_retry_delay = 30
        config.discovery.offline_retry_max_delay = 100
        monitor = make_monitor(config)
        delays = []
        for failures in range(4):
            monitor._offline_failures = failures
            delays.append(monitor.retry_delay())
        assert delays == [30, 60, 100, 100]

    @pytest.mark.asyncio
    async def test_no_retry_scheduled_when_not_running(self, config):
        monitor = make_monitor(config)
        monitor.locator.discover = AsyncMock(return_value=None)
        await monitor.boot()
        assert monitor._retry_task is None

    @pytest.mark.asyncio
    async def test_failed_boot_retries_until_found(self, config):
        config.discovery.offline_retry_delay = 0.01
        monitor = make_monitor(config)
        monitor.state.running = True
        monitor.locator.discover = AsyncMock(side_effect=[None, None, make_target()])
        monitor.client.start_polling = MagicMock()

        assert not await monitor.boot()
        for _ in range(100):
            if monitor.client.is_engaged:
                break
            await asyncio.sleep(0.01)

        assert monitor.client.is_engaged
        assert monitor.locator.discover.await_count == 3
        assert monitor._offline_failures == 0
        monitor.client.start_polling.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_retry(self, config):
        config.discovery.offline_retry_delay = 60
        monitor = make_monitor(config)
        monitor.state.running = True
        monitor.locator.discover = AsyncMock(return_value=None)

        await monitor.boot()
        task = monitor._retry_task
        await monitor.stop()

        assert task.cancelled()
        assert monitor._retry_task is None


class TestPidFile:
    """Single-instance guard."""

    def test_write_pid_file(self, config):
        monitor = make_monitor(config)
        monitor._write_pid_file()
        assert config.pid_path.read_text() == str(os.getpid())

    def test_remove_pid_file(self, config):
        monitor = make_monitor(config)
        monitor._write_pid_file()
        monitor._remove_pid_file()
        assert not config.pid_path.exists()

    def test_remove_pid_file_nonexistent(self, config):
        make_monitor(config)._remove_pid_file()

    def test_no_pid_file(self, config):
        assert not make_monitor(config)._check_already_running()

    def test_stale_pid(self, config):
        config.pid_path.parent.mkdir(parents=True)
        config.pid_path.write_text("999999999")

        with patch("quota_radar.monitor.psutil.Process", side_effect=psutil.NoSuchProcess(999999999)):
            assert not make_monitor(config)._check_already_running()
        assert not config.pid_path.exists()

    def test_invalid_pid(self, config):
        config.pid_path.parent.mkdir(parents=True)
        config.pid_path.write_text("not-a-number")
        assert not make_monitor(config)._check_already_running()
        assert not config.pid_path.exists()

    def test_current_process(self, config):
        config.pid_path.parent.mkdir(parents=True)
        config.pid_path.write_text(str(os.getpid()))
        assert not make_monitor(config)._check_already_running()
        assert config.pid_path.exists()

    def test_reused_pid_is_stale(self, config):
        config.pid_path.parent.mkdir(parents=True)
        config.pid_path.write_text("4321")
        proc = MagicMock()
        proc.cmdline.return_value = ["/usr/bin/vim", "notes.txt"]
        proc.name.return_value = "vim"

        with patch("quota_radar.monitor.psutil.Process", return_value=proc):
            assert not make_monitor(config)._check_already_running()
        assert not config.pid_path.exists()

    def test_live_monitor_detected(self, config):
        config.pid_path.parent.mkdir(parents=True)
        config.pid_path.write_text("4321")
        proc = MagicMock()
        proc.cmdline.return_value = ["/usr/bin/python3", "/usr/local/bin/quota-radar", "run"]

        with patch("quota_radar.monitor.psutil.Process", return_value=proc):
            assert make_monitor(config)._check_already_running()
        assert config.pid_path.exists()

    def test_access_denied_assumes_running(self, config):
        config.pid_path.parent.mkdir(parents=True)
        config.pid_path.write_text("1")
        with patch("quota_radar.monitor.psutil.Process", side_effect=psutil.AccessDenied(1)):
            assert make_monitor(config)._check_already_running()

    @pytest.mark.asyncio
    async def test_start_rejects_duplicate(self, config):
        monitor = make_monitor(config)
        with patch.object(monitor, "_check_already_running", return_value=True):
            with pytest.raises(RuntimeError, match="already running"):
                await monitor.start()

    @pytest.mark.asyncio
    async def test_stop_removes_pid_file(self, config):
        monitor = make_monitor(config)
        monitor._write_pid_file()
        await monitor.stop()
        assert not config.pid_path.exists()
        assert not monitor.state.running

    @pytest.mark.asyncio
    async def test_stop_keeps_pid_file_it_did_not_write(self, config):
        config.pid_path.parent.mkdir(parents=True)
        config.pid_path.write_text("4321")
        await make_monitor(config).stop()
        assert config.pid_path.read_text() == "4321"

    @pytest.mark.asyncio
    async def test_refused_second_run_leaves_live_pid_file(self, config):
        from quota_radar.monitor import run_monitor

        config.pid_path.parent.mkdir(parents=True)
        config.pid_path.write_text("4321")
        proc = MagicMock()
        proc.cmdline.return_value = ["/usr/bin/python3", "/usr/local/bin/quota-radar", "run"]

        with (
            patch("quota_radar.monitor.psutil.Process", return_value=proc),
            patch("quota_radar.monitor.console"),
        ):
            with pytest.raises(RuntimeError, match="already running"):
                await run_monitor(config)

        assert config.pid_path.read_text() == "4321"


@pytest.mark.asyncio
async def test_handle_signal_sets_shutdown(config):
    import signal

    monitor = make_monitor(config)
    monitor._handle_signal(signal.SIGTERM)
    assert monitor._shutdown_event.is_set()
