# src/quota_radar/models.py
"""Domain model for discovery results and quota snapshots.

Everything a consumer sees is immutable: a poll produces a fresh Snapshot and
replaces the previous one wholesale.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

# Sentinel for entitlement fields the server did not send
UNKNOWN = "N/A"


class QuotaLevel(Enum):
    """Health classification of a model or group against the thresholds."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    DEPLETED = "depleted"


def classify_level(percentage: float | None, warning: int, critical: int) -> QuotaLevel:
    """Classify a remaining percentage against warning/critical thresholds.

    A model that reports no fraction at all is treated as healthy.
    """
    if percentage is None:
        return QuotaLevel.NORMAL
    if percentage <= 0:
        return QuotaLevel.DEPLETED
    if percentage <= critical:
        return QuotaLevel.CRITICAL
    if percentage <= warning:
        return QuotaLevel.WARNING
    return QuotaLevel.NORMAL


# --- Discovery ---


@dataclass(frozen=True)
class ProcessCandidate:
    """A process whose command line looks like the language server."""

    pid: int
    declared_port: int  # --extension_server_port, 0 when absent
    token: str
    ppid: int = 0


@dataclass(frozen=True)
class ConnectionTarget:
    """A verified (port, token) pair. Replaced, never mutated."""

    port: int
    token: str
    pid: int = 0
    declared_port: int = 0

    @property
    def masked_token(self) -> str:
        """Token with everything but the first and last four characters hidden."""
        if len(self.token) <= 8:
            return "*" * len(self.token)
        return f"{self.token[:4]}…{self.token[-4:]}"


# --- Quota ---


@dataclass(frozen=True)
class QuotaModel:
    """Quota state of a single model at decode time."""

    model_id: str
    label: str
    remaining_fraction: float | None
    reset_time: datetime
    seconds_until_reset: float
    countdown: str
    reset_display: str
    level: QuotaLevel = QuotaLevel.NORMAL
    display_name: str = ""  # custom name if the user assigned one
    is_pinned: bool = False

    @property
    def remaining_percentage(self) -> float | None:
        """Remaining quota as 0..100, None when the server sent no fraction."""
        if self.remaining_fraction is None:
            return None
        return self.remaining_fraction * 100

    @property
    def is_exhausted(self) -> bool:
        """True only for an explicit zero fraction."""
        return self.remaining_fraction == 0

    @property
    def name(self) -> str:
        """Name to show: custom display name, falling back to the label."""
        return self.display_name or self.label

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "model_id": self.model_id,
            "label": self.label,
            "name": self.name,
            "remaining_fraction": self.remaining_fraction,
            "remaining_percentage": self.remaining_percentage,
            "is_exhausted": self.is_exhausted,
            "reset_time": self.reset_time.isoformat(),
            "reset_display": self.reset_display,
            "countdown": self.countdown,
            "level": self.level.value,
            "is_pinned": self.is_pinned,
        }


@dataclass(frozen=True)
class QuotaGroup:
    """Models that share one quota pool."""

    group_id: str
    group_name: str
    models: tuple[QuotaModel, ...]
    remaining_percentage: float | None
    reset_time: datetime
    countdown: str
    reset_display: str
    is_exhausted: bool
    level: QuotaLevel = QuotaLevel.NORMAL
    is_pinned: bool = False

    @property
    def model_ids(self) -> list[str]:
        return [m.model_id for m in self.models]

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "group_id": self.group_id,
            "group_name": self.group_name,
            "model_ids": self.model_ids,
            "remaining_percentage": self.remaining_percentage,
            "reset_time": self.reset_time.isoformat(),
            "reset_display": self.reset_display,
            "countdown": self.countdown,
            "is_exhausted": self.is_exhausted,
            "level": self.level.value,
            "is_pinned": self.is_pinned,
        }


@dataclass(frozen=True)
class PromptCredits:
    """Prompt credit balance against the plan's monthly allowance."""

    available: float
    monthly: float

    @property
    def used_percentage(self) -> float:
        return (self.monthly - self.available) / self.monthly * 100

    @property
    def remaining_percentage(self) -> float:
        return self.available / self.monthly * 100


@dataclass(frozen=True)
class UserInfo:
    """User identity and plan entitlements.

    The server does not guarantee any of these fields, so every field has a
    default: False for flags, UNKNOWN for strings and limits, 0 for credits.
    """

    name: str = "Unknown User"
    email: str = UNKNOWN
    plan_name: str = UNKNOWN
    tier: str = UNKNOWN
    tier_id: str = UNKNOWN
    tier_description: str = UNKNOWN
    teams_tier: str = UNKNOWN
    upgrade_uri: str = ""
    upgrade_text: str = ""
    # Credits
    monthly_prompt_credits: float = 0
    monthly_flow_credits: float = 0
    available_prompt_credits: float = 0
    available_flow_credits: float = 0
    monthly_flex_credit_purchase_amount: float = 0
    # Limits
    max_chat_input_tokens: str = UNKNOWN
    max_premium_chat_messages: str = UNKNOWN
    max_custom_instruction_chars: str = UNKNOWN
    max_pinned_context_items: str = UNKNOWN
    max_local_index_size: str = UNKNOWN
    # Feature flags
    browser_enabled: bool = False
    knowledge_base_enabled: bool = False
    can_buy_more_credits: bool = False
    has_autocomplete_fast_mode: bool = False
    web_search_enabled: bool = False
    can_generate_commit_messages: bool = False
    has_tab_to_jump: bool = False
    allow_sticky_premium_models: bool = False
    allow_premium_command_models: bool = False
    can_customize_app_icon: bool = False
    can_auto_run_commands: bool = False
    can_run_in_background: bool = False
    allow_mcp_servers: bool = False
    allow_auto_run_commands: bool = False
    allow_browser_experimental_features: bool = False
    accepted_latest_terms: bool = False


@dataclass(frozen=True)
class Snapshot:
    """The unit of truth handed to every consumer."""

    timestamp: datetime
    is_connected: bool
    models: tuple[QuotaModel, ...] = ()
    groups: tuple[QuotaGroup, ...] | None = None
    user_info: UserInfo | None = None
    prompt_credits: PromptCredits | None = None
    error_message: str | None = None

    @classmethod
    def offline(cls, error_message: str | None = None) -> "Snapshot":
        """Snapshot describing a disconnected state."""
        return cls(timestamp=datetime.now(timezone.utc), is_connected=False, error_message=error_message)

    @property
    def lowest_percentage(self) -> float | None:
        """Lowest remaining percentage across all models that report one."""
        values = [m.remaining_percentage for m in self.models if m.remaining_percentage is not None]
        return min(values) if values else None

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        credits = None
        if self.prompt_credits is not None:
            credits = {
                "available": self.prompt_credits.available,
                "monthly": self.prompt_credits.monthly,
                "used_percentage": self.prompt_credits.used_percentage,
                "remaining_percentage": self.prompt_credits.remaining_percentage,
            }
        return {
            "timestamp": self.timestamp.isoformat(),
            "is_connected": self.is_connected,
            "error_message": self.error_message,
            "user": None if self.user_info is None else self.user_info.__dict__.copy(),
            "prompt_credits": credits,
            "models": [m.to_dict() for m in self.models],
            "groups": None if self.groups is None else [g.to_dict() for g in self.groups],
        }
