# src/quota_radar/client.py
"""Telemetry polling against a verified language server."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any

import httpx
import structlog

from quota_radar.config import Config
from quota_radar.decoder import decode
from quota_radar.errors import QuotaRadarError, classify_transport_error
from quota_radar.grouper import group_snapshot, recompute
from quota_radar.models import ConnectionTarget, Snapshot
from quota_radar.probe import TELEMETRY_PATH, build_headers, create_http_client, endpoint_url

log = structlog.get_logger()

SnapshotListener = Callable[[Snapshot], None]
MalfunctionListener = Callable[[QuotaRadarError], None]

# Exceptions a poll can raise before classification
_POLL_ERRORS = (httpx.HTTPError, QuotaRadarError, OSError, ValueError, KeyError, TypeError)


def telemetry_body(locale: str = "en") -> dict[str, Any]:
    """Metadata the server expects on GetUserStatus."""
    return {
        "metadata": {
            "ideName": "antigravity",
            "extensionName": "antigravity",
            "locale": locale,
        }
    }


@dataclass(frozen=True)
class ClientState:
    """Everything the client owns, replaced as a whole on every change."""

    target: ConnectionTarget | None = None
    raw_payload: dict | None = None
    snapshot: Snapshot | None = None


class PollScheduler:
    """Runs a coroutine every `interval` seconds until stopped.

    The first tick fires immediately. `stop()` flips the cancellation token;
    the loop exits before the next tick and an in-flight poll finishes on its
    own. With overlap_policy "drop" a tick that finds the previous poll still
    running is skipped; with "serialize" it waits for it.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[Any]],
        overlap_policy: str = "drop",
        on_skip: Callable[[], None] | None = None,
    ):
        self.interval = interval
        self.callback = callback
        self.overlap_policy = overlap_policy
        self.on_skip = on_skip
        self.ticks = 0
        self.skipped = 0
        self._cancelled = asyncio.Event()
        self._lock = asyncio.Lock()
        self._loop_task: asyncio.Task | None = None
        self._in_flight: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """Start ticking. No-op if already running."""
        if self.is_running:
            return
        self._cancelled = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run())
        log.info("poll_scheduler_started", interval=self.interval, policy=self.overlap_policy)

    def stop(self) -> None:
        """Cancel future ticks. An in-flight poll is left to finish."""
        if not self._cancelled.is_set():
            self._cancelled.set()
            log.info("poll_scheduler_stopped", ticks=self.ticks, skipped=self.skipped)

    async def wait_closed(self) -> None:
        """Wait for the tick loop and any in-flight poll to finish."""
        if self._loop_task is not None:
            await self._loop_task
        if self._in_flight is not None and not self._in_flight.done():
            await self._in_flight

    def tick(self) -> asyncio.Task | None:
        """Start one poll, honoring the overlap policy. Returns its task."""
        if self._cancelled.is_set():
            return None
        self.ticks += 1
        if self._in_flight is not None and not self._in_flight.done():
            if self.overlap_policy == "drop":
                self.skipped += 1
                log.warning("poll_tick_skipped", tick=self.ticks)
                if self.on_skip is not None:
                    self.on_skip()
                return None
        self._in_flight = asyncio.create_task(self._guarded())
        return self._in_flight

    async def _guarded(self) -> None:
        async with self._lock:
            await self.callback()

    async def _run(self) -> None:
        while not self._cancelled.is_set():
            self.tick()
            try:
                await asyncio.wait_for(self._cancelled.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue


class TelemetryClient:
    """Owns the connection target, polls GetUserStatus, and publishes snapshots.

    Idle -> Engaged (has a target) -> Polling (scheduler running).

    Every failure is classified and delivered to the malfunction listeners;
    poll_once() never raises. State lives in one ClientState that is swapped
    as a whole at the end of a successful poll or reprocess.
    """

    def __init__(self, config: Config, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self.state = ClientState()
        self.poll_count = 0
        self.failure_count = 0
        self._transport = transport
        self._scheduler: PollScheduler | None = None
        self._snapshot_listeners: list[SnapshotListener] = []
        self._malfunction_listeners: list[MalfunctionListener] = []

    # --- Subscriptions ---

    def on_snapshot(self, listener: SnapshotListener) -> None:
        self._snapshot_listeners.append(listener)

    def on_malfunction(self, listener: MalfunctionListener) -> None:
        self._malfunction_listeners.append(listener)

    # --- State ---

    @property
    def target(self) -> ConnectionTarget | None:
        return self.state.target

    @property
    def is_engaged(self) -> bool:
        return self.state.target is not None

    @property
    def is_polling(self) -> bool:
        return self._scheduler is not None and self._scheduler.is_running

    def latest_snapshot(self) -> Snapshot | None:
        return self.state.snapshot

    def engage(self, target: ConnectionTarget) -> None:
        """Adopt a verified connection target, replacing any previous one."""
        self.state = replace(self.state, target=target)
        log.info("client_engaged", port=target.port, pid=target.pid)

    def disengage(self) -> None:
        """Drop the connection target. Cached data is kept for reprocess()."""
        self.state = replace(self.state, target=None)
        log.info("client_disengaged")

    # --- Polling ---

    def start_polling(
        self, interval: float | None = None, on_skip: Callable[[], None] | None = None
    ) -> None:
        """Start periodic polling; restarts the scheduler if already running."""
        if interval is None:
            interval = self.config.polling.interval_seconds
        if self._scheduler is not None:
            self._scheduler.stop()
        self._scheduler = PollScheduler(
            interval,
            self.poll_once,
            overlap_policy=self.config.polling.overlap_policy,
            on_skip=on_skip,
        )
        self._scheduler.start()

    def stop(self) -> None:
        """Stop scheduling polls. An in-flight request is not aborted."""
        if self._scheduler is not None:
            self._scheduler.stop()

    async def wait_closed(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.wait_closed()

    async def fetch_raw(self, target: ConnectionTarget) -> dict:
        """POST GetUserStatus and return the decoded JSON body.

        Raises:
            httpx.HTTPError: On transport failure or non-2xx status
            ValueError: If the body is not JSON
        """
        async with create_http_client(self._transport) as client:
            response = await client.post(
                endpoint_url(target.port, TELEMETRY_PATH),
                headers=build_headers(target.token),
                json=telemetry_body(self.config.polling.locale),
                timeout=self.config.polling.http_timeout,
            )
            response.raise_for_status()
            return response.json()

    async def poll_once(self) -> Snapshot | None:
        """Fetch, decode and publish one snapshot. Returns None on failure."""
        target = self.state.target
        if target is None:
            log.warning("poll_without_target")
            return None

        self.poll_count += 1
        try:
            raw = await self.fetch_raw(target)
            snapshot = self._build(raw)
        except _POLL_ERRORS as e:
            self.failure_count += 1
            self._report(classify_transport_error(e))
            return None

        self.failure_count = 0
        self.state = replace(self.state, raw_payload=raw, snapshot=snapshot)
        log.info(
            "poll_success",
            poll=self.poll_count,
            models=len(snapshot.models),
            lowest=snapshot.lowest_percentage,
        )
        self._publish(snapshot)
        return snapshot

    def reprocess(self) -> Snapshot | None:
        """Re-decode the cached payload with the current config. No network call."""
        raw = self.state.raw_payload
        if raw is None:
            log.debug("reprocess_skipped", reason="no cached payload")
            return None
        try:
            snapshot = self._build(raw)
        except QuotaRadarError as e:
            self._report(e)
            return None
        self.state = replace(self.state, snapshot=snapshot)
        log.info("snapshot_reprocessed", models=len(snapshot.models))
        self._publish(snapshot)
        return snapshot

    def auto_group(self) -> dict[str, str]:
        """Recompute group membership from the latest models and persist it."""
        snapshot = self.state.snapshot
        if snapshot is None or not snapshot.models:
            log.warning("auto_group_skipped", reason="no models")
            return {}
        grouping = self.config.grouping
        membership = recompute(
            snapshot.models, grouping.fingerprint_precision, grouping.fingerprint_tolerance
        )
        self.config.set_memberships(membership)
        self.reprocess()
        return membership

    def _build(self, raw: dict) -> Snapshot:
        snapshot = decode(raw, self.config)
        grouping = self.config.grouping
        if grouping.enabled and not grouping.bootstrapped and snapshot.models:
            # First run with grouping on: seed membership from this payload
            membership = grouping.memberships or recompute(
                snapshot.models, grouping.fingerprint_precision, grouping.fingerprint_tolerance
            )
            self.config.set_memberships(membership)
            log.info("groups_bootstrapped", groups=len(set(membership.values())))
        return group_snapshot(snapshot, self.config)

    def _publish(self, snapshot: Snapshot) -> None:
        for listener in self._snapshot_listeners:
            listener(snapshot)

    def _report(self, error: QuotaRadarError) -> None:
        log.warning(
            "poll_malfunction",
            kind=type(error).__name__,
            error=str(error),
            transient=error.transient,
        )
        for listener in self._malfunction_listeners:
            listener(error)
