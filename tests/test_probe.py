"""Tests for liveness probing."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from quota_radar.models import ProcessCandidate
from quota_radar.probe import LIVENESS_PATH, ConnectionProbe, build_headers, endpoint_url
from quota_radar.shell import CommandFailed, CommandResult
from quota_radar.strategies import UnixStrategy

CANDIDATE = ProcessCandidate(pid=4242, declared_port=53125, token="tok-123")


def make_strategy(ports: list[int]) -> MagicMock:
    """Strategy whose port parser returns a fixed list."""
    strategy = MagicMock(spec=UnixStrategy)
    strategy.list_ports.return_value = "lsof ..."
    strategy.parse_ports.return_value = ports
    return strategy


def ok_result(stdout: str = "listing") -> CommandResult:
    return CommandResult(command="lsof ...", returncode=0, stdout=stdout, stderr="")


def test_endpoint_url():
    assert endpoint_url(53125, LIVENESS_PATH) == (
        "https://127.0.0.1:53125/exa.language_server_pb.LanguageServerService/GetUnleashData"
    )


def test_build_headers():
    headers = build_headers("tok-123")
    assert headers["X-Codeium-Csrf-Token"] == "tok-123"
    assert headers["Connect-Protocol-Version"] == "1"
    assert headers["Content-Type"] == "application/json"


@pytest.mark.asyncio
async def test_verify_first_live_port_wins():
    """Ports are probed ascending and probing stops at the first 200."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.port)
        if request.url.port == 53126:
            return httpx.Response(200, json={})
        return httpx.Response(404)

    probe = ConnectionProbe(
        make_strategy([53127, 53125, 53126]), transport=httpx.MockTransport(handler)
    )
    with patch("quota_radar.probe.run_command", AsyncMock(return_value=ok_result())):
        target = await probe.verify(CANDIDATE)

    assert target is not None
    assert target.port == 53126
    assert target.token == "tok-123"
    assert target.pid == 4242
    assert seen == [53125, 53126]


@pytest.mark.asyncio
async def test_verify_sends_authenticated_liveness_request():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    probe = ConnectionProbe(make_strategy([53125]), transport=httpx.MockTransport(handler))
    with patch("quota_radar.probe.run_command", AsyncMock(return_value=ok_result())):
        await probe.verify(CANDIDATE)

    request = requests[0]
    assert request.method == "POST"
    assert request.url.path == LIVENESS_PATH
    assert request.url.scheme == "https"
    assert request.headers["X-Codeium-Csrf-Token"] == "tok-123"
    assert json.loads(request.content) == {"wrapper_data": {}}


@pytest.mark.asyncio
async def test_verify_returns_none_when_no_port_answers():
    """Connection errors and non-200s on every port mean not verified."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.port == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(403)

    probe = ConnectionProbe(make_strategy([1, 2, 3]), transport=httpx.MockTransport(handler))
    with patch("quota_radar.probe.run_command", AsyncMock(return_value=ok_result())):
        assert await probe.verify(CANDIDATE) is None


@pytest.mark.asyncio
async def test_verify_no_ports_skips_http():
    handler = MagicMock()
    probe = ConnectionProbe(make_strategy([]), transport=httpx.MockTransport(handler))
    with patch("quota_radar.probe.run_command", AsyncMock(return_value=ok_result(""))):
        assert await probe.verify(CANDIDATE) is None
    handler.assert_not_called()


@pytest.mark.asyncio
async def test_list_ports_command_failure_is_empty():
    """A failing port command is reported as no ports, not an exception."""
    probe = ConnectionProbe(make_strategy([53125]))
    failing = AsyncMock(side_effect=CommandFailed("lsof", "Command timed out", timed_out=True))
    with patch("quota_radar.probe.run_command", failing):
        assert await probe.list_ports(4242) == []


@pytest.mark.asyncio
async def test_list_ports_passes_pid_to_parser():
    strategy = make_strategy([53125])
    probe = ConnectionProbe(strategy)
    with patch("quota_radar.probe.run_command", AsyncMock(return_value=ok_result("rows"))):
        assert await probe.list_ports(4242) == [53125]
    strategy.list_ports.assert_called_once_with(4242)
    strategy.parse_ports.assert_called_once_with("rows", 4242)
