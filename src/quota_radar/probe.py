# src/quota_radar/probe.py
"""Liveness probing of a candidate process's listening ports."""

from __future__ import annotations

import httpx
import structlog

from quota_radar.models import ConnectionTarget, ProcessCandidate
from quota_radar.shell import CommandFailed, run_command
from quota_radar.strategies import CommandStrategy

log = structlog.get_logger()

SERVICE_PREFIX = "/exa.language_server_pb.LanguageServerService"
LIVENESS_PATH = f"{SERVICE_PREFIX}/GetUnleashData"
TELEMETRY_PATH = f"{SERVICE_PREFIX}/GetUserStatus"
LIVENESS_BODY = {"wrapper_data": {}}


def endpoint_url(port: int, path: str) -> str:
    """URL of an RPC path on the loopback server."""
    return f"https://127.0.0.1:{port}{path}"


def build_headers(token: str) -> dict[str, str]:
    """Headers for an authenticated Connect-protocol JSON request."""
    return {
        "Content-Type": "application/json",
        "Connect-Protocol-Version": "1",
        "X-Codeium-Csrf-Token": token,
    }


def create_http_client(transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """Async client for the loopback server.

    The server presents a self-signed certificate, so verification is off.
    """
    return httpx.AsyncClient(verify=False, transport=transport)


class ConnectionProbe:
    """Turns a ProcessCandidate into a verified ConnectionTarget.

    Ports are probed one at a time in ascending order and the first one that
    answers the liveness request with HTTP 200 wins.
    """

    def __init__(
        self,
        strategy: CommandStrategy,
        timeout: float = 8.0,
        command_timeout: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.strategy = strategy
        self.timeout = timeout
        self.command_timeout = command_timeout
        self._transport = transport

    async def list_ports(self, pid: int) -> list[int]:
        """Listening ports owned by pid, ascending. Empty on any failure."""
        command = self.strategy.list_ports(pid)
        try:
            result = await run_command(command, self.command_timeout)
        except CommandFailed as e:
            log.warning("port_list_failed", pid=pid, error=str(e))
            return []
        ports = self.strategy.parse_ports(result.stdout, pid)
        log.debug("ports_listed", pid=pid, ports=ports)
        return ports

    async def is_alive(self, client: httpx.AsyncClient, port: int, token: str) -> bool:
        """Send one liveness request. Any transport error counts as not alive."""
        try:
            response = await client.post(
                endpoint_url(port, LIVENESS_PATH),
                headers=build_headers(token),
                json=LIVENESS_BODY,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            log.debug("probe_port_error", port=port, error=type(e).__name__)
            return False
        if response.status_code != 200:
            log.debug("probe_port_rejected", port=port, status=response.status_code)
            return False
        return True

    async def verify(self, candidate: ProcessCandidate) -> ConnectionTarget | None:
        """Find the candidate's API port. Returns None if no port answers."""
        ports = await self.list_ports(candidate.pid)
        if not ports:
            log.info("probe_no_ports", pid=candidate.pid)
            return None

        async with create_http_client(self._transport) as client:
            for port in sorted(ports):
                if await self.is_alive(client, port, candidate.token):
                    log.info("probe_verified", pid=candidate.pid, port=port)
                    return ConnectionTarget(
                        port=port,
                        token=candidate.token,
                        pid=candidate.pid,
                        declared_port=candidate.declared_port,
                    )

        log.info("probe_no_live_port", pid=candidate.pid, tried=ports)
        return None
