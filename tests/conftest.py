"""Shared test fixtures for quota-radar."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from quota_radar.config import Config
from quota_radar.formatting import format_countdown, format_reset_time
from quota_radar.models import ConnectionTarget, QuotaModel

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
TOKEN = "1f2e3d4c-5b6a-7980-a1b2-c3d4e5f60718"


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME at a temp dir so no test touches the real config or state dirs."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Default config persisted under the test's temp dir."""
    return Config(path=tmp_path / "config.toml")


def make_target(port: int = 42100, token: str = TOKEN, pid: int = 4242) -> ConnectionTarget:
    """Create a ConnectionTarget for testing."""
    return ConnectionTarget(port=port, token=token, pid=pid)


def make_model(
    model_id: str = "MODEL_A",
    label: str | None = None,
    fraction: float | None = 0.5,
    reset_in: timedelta = timedelta(hours=2),
    now: datetime = NOW,
    display_name: str = "",
) -> QuotaModel:
    """Create a QuotaModel for testing. Reset time is relative to NOW."""
    reset_time = now + reset_in
    seconds = reset_in.total_seconds()
    return QuotaModel(
        model_id=model_id,
        label=label or model_id.title(),
        remaining_fraction=fraction,
        reset_time=reset_time,
        seconds_until_reset=seconds,
        countdown=format_countdown(seconds),
        reset_display=format_reset_time(reset_time),
        display_name=display_name,
    )


def make_model_config(
    model_id: str,
    label: str | None = None,
    fraction: float | None = 0.5,
    reset_time: str = "2026-01-15T14:00:00Z",
) -> dict:
    """Create one clientModelConfigs entry as the server sends it."""
    quota: dict = {"resetTime": reset_time}
    if fraction is not None:
        quota["remainingFraction"] = fraction
    return {
        "label": label or model_id.title(),
        "modelOrAlias": {"model": model_id},
        "quotaInfo": quota,
    }


def make_payload(
    configs: list[dict] | None = None,
    sort_labels: list[list[str]] | None = None,
    plan: dict | None = None,
    available_prompt_credits: int | str | None = 450,
) -> dict:
    """Create a GetUserStatus response body."""
    plan_status: dict = {
        "planInfo": plan
        if plan is not None
        else {"planName": "Pro", "monthlyPromptCredits": 500, "browserEnabled": True},
    }
    if available_prompt_credits is not None:
        plan_status["availablePromptCredits"] = available_prompt_credits

    model_data: dict = {"clientModelConfigs": configs or []}
    if sort_labels is not None:
        model_data["clientModelSorts"] = [
            {"name": "Recommended", "groups": [{"modelLabels": labels} for labels in sort_labels]}
        ]

    return {
        "userStatus": {
            "name": "Ada",
            "email": "ada@example.com",
            "planStatus": plan_status,
            "userTier": {"id": "g1-pro-tier", "name": "Pro"},
            "cascadeModelConfigData": model_data,
        }
    }
