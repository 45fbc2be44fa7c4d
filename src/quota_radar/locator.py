# src/quota_radar/locator.py
"""Discovery orchestration: name search, keyword fallback, diagnostics."""

from __future__ import annotations

import asyncio

import structlog

from quota_radar.config import DiscoveryConfig
from quota_radar.errors import DiscoveryFailure, ToolUnavailable
from quota_radar.models import ConnectionTarget, ProcessCandidate
from quota_radar.probe import ConnectionProbe
from quota_radar.shell import CommandFailed, run_command
from quota_radar.strategies import CommandStrategy

log = structlog.get_logger()

# Sub-tool switches per discover() call; stops PowerShell <-> WMIC ping-pong
MAX_STRATEGY_SWITCHES = 2
DIAGNOSTICS_MAX_CHARS = 2000


class ProcessLocator:
    """Finds the language server and returns a verified ConnectionTarget.

    Phase A runs the strategy's name search up to max_attempts times.
    Phase B runs the keyword scan where the strategy supports one.
    Phase C runs diagnostics for the operator and gives up.

    Every phase reports through return values; discover() itself never
    raises for a missing process. After a failed run, `last_failure` holds
    a DiscoveryFailure and `last_diagnostics` the diagnostics output.
    """

    def __init__(
        self,
        strategy: CommandStrategy,
        probe: ConnectionProbe,
        config: DiscoveryConfig | None = None,
    ):
        self.strategy = strategy
        self.probe = probe
        self.config = config or DiscoveryConfig()
        self.attempts_made = 0
        self.switch_count = 0
        self.last_failure: DiscoveryFailure | None = None
        self.last_diagnostics: str | None = None

    async def discover(self, max_attempts: int | None = None) -> ConnectionTarget | None:
        """Run all discovery phases. Returns None when nothing verified."""
        max_attempts = max_attempts or self.config.max_attempts
        self.attempts_made = 0
        self.switch_count = 0
        self.last_failure = None
        self.last_diagnostics = None

        log.info(
            "discovery_start",
            platform=self.strategy.platform,
            process=self.strategy.process_name,
            max_attempts=max_attempts,
        )

        target = await self._name_search(max_attempts)
        if target is None:
            target = await self._keyword_search()
        if target is not None:
            log.info("discovery_success", port=target.port, pid=target.pid)
            return target

        self.last_diagnostics = await self.run_diagnostics()
        for step in self.strategy.troubleshooting():
            log.info("discovery_troubleshooting", step=step)
        self.last_failure = DiscoveryFailure(
            f"{self.strategy.process_name} not found after {self.attempts_made} attempts"
        )
        log.error("discovery_failed", attempts=self.attempts_made, switches=self.switch_count)
        return None

    async def _name_search(self, max_attempts: int) -> ConnectionTarget | None:
        """Phase A. Switches and the cold-start retry do not consume attempts."""
        cold_start_retried = False

        while self.attempts_made < max_attempts:
            command = self.strategy.list_candidates()
            log.debug(
                "name_search_attempt",
                attempt=self.attempts_made + 1,
                sub_tool=self.strategy.sub_tool,
            )
            try:
                result = await run_command(command, self.config.command_timeout)
            except CommandFailed as e:
                message = f"{e} {e.stderr}"
                for hint in self.strategy.error_hints(message):
                    log.warning("discovery_hint", hint=hint)

                if not cold_start_retried and self.strategy.is_cold_start_timeout(message):
                    cold_start_retried = True
                    log.warning("cold_start_retry", delay=self.config.cold_start_delay)
                    await asyncio.sleep(self.config.cold_start_delay)
                    continue

                if self.strategy.is_switchable_error(message):
                    if self._switch_sub_tool(message):
                        continue
                    unavailable = ToolUnavailable(self.strategy.sub_tool, str(e))
                    log.error("tool_unavailable", tool=unavailable.tool, error=str(unavailable))

                self.attempts_made += 1
                log.warning("name_search_error", attempt=self.attempts_made, error=str(e))
                await self._pause(max_attempts)
                continue

            self.attempts_made += 1
            if result.empty:
                log.info("name_search_empty", attempt=self.attempts_made)
                await self._pause(max_attempts)
                continue

            candidates = self.strategy.parse_candidates(result.stdout)
            log.info("name_search_candidates", attempt=self.attempts_made, count=len(candidates))
            target = await self._verify_all(candidates)
            if target is not None:
                return target
            await self._pause(max_attempts)

        return None

    async def _keyword_search(self) -> ConnectionTarget | None:
        """Phase B. Only available where the strategy offers a keyword scan."""
        command = self.strategy.list_candidates_by_keyword()
        if command is None:
            log.debug("keyword_search_unsupported", sub_tool=self.strategy.sub_tool)
            return None

        log.info("keyword_search_start")
        try:
            result = await run_command(command, self.config.command_timeout)
        except CommandFailed as e:
            log.warning("keyword_search_error", error=str(e))
            return None
        if result.empty:
            log.info("keyword_search_empty")
            return None

        candidates = self.strategy.parse_candidates(result.stdout)
        log.info("keyword_search_candidates", count=len(candidates))
        return await self._verify_all(candidates)

    async def run_diagnostics(self) -> str:
        """Phase C. Best-effort listing of related processes, truncated."""
        try:
            result = await run_command(self.strategy.diagnostics(), self.config.diagnostics_timeout)
        except CommandFailed as e:
            log.warning("diagnostics_failed", error=str(e))
            return ""
        output = result.stdout.strip()[:DIAGNOSTICS_MAX_CHARS]
        log.info("diagnostics_output", output=output or "<none>")
        return output

    async def _verify_all(self, candidates: list[ProcessCandidate]) -> ConnectionTarget | None:
        """Try every candidate in order; the first verified one wins."""
        for candidate in candidates:
            target = await self.probe.verify(candidate)
            if target is not None:
                return target
            log.info("candidate_rejected", pid=candidate.pid)
        return None

    def _switch_sub_tool(self, reason: str) -> bool:
        """Flip to the alternate sub-tool if allowed. Returns False when capped."""
        if not self.strategy.can_switch or self.switch_count >= MAX_STRATEGY_SWITCHES:
            return False
        previous = self.strategy.sub_tool
        current = self.strategy.switch_sub_tool()
        self.switch_count += 1
        log.warning(
            "sub_tool_switched",
            previous=previous,
            current=current,
            switches=self.switch_count,
            reason=reason.strip()[:200],
        )
        return True

    async def _pause(self, max_attempts: int) -> None:
        if self.attempts_made < max_attempts and self.config.retry_delay > 0:
            await asyncio.sleep(self.config.retry_delay)
