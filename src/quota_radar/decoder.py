# src/quota_radar/decoder.py
"""Decode a raw GetUserStatus payload into a Snapshot.

Decoding is a pure function of (payload, config, now). Countdowns are
computed against `now`, so decoding the same payload later yields fresher
countdowns.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

import structlog

from quota_radar.config import Config
from quota_radar.errors import PayloadCorrupt
from quota_radar.formatting import format_countdown, format_reset_time
from quota_radar.models import (
    UNKNOWN,
    PromptCredits,
    QuotaModel,
    Snapshot,
    UserInfo,
    classify_level,
)

log = structlog.get_logger()

# fromisoformat() before 3.11 rejects "Z" and fractions longer than 6 digits
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def parse_reset_time(value: Any) -> datetime:
    """Parse the server's ISO-8601 reset time into an aware datetime.

    Raises:
        PayloadCorrupt: If the value is missing or not a timestamp
    """
    if not isinstance(value, str) or not value:
        raise PayloadCorrupt(f"Missing resetTime: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(r".\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise PayloadCorrupt(f"Invalid resetTime {value!r}: {e}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _number(value: Any, default: float = 0) -> float:
    """Coerce protobuf JSON numbers (int64 arrives as a string) to float."""
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _text(value: Any, default: str = UNKNOWN) -> str:
    if value is None or value == "":
        return default
    return str(value)


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def decode_user_info(status: dict) -> UserInfo:
    """Build UserInfo, defaulting every missing or mistyped field."""
    plan_status = _dict(status.get("planStatus"))
    plan = _dict(plan_status.get("planInfo"))
    tier = _dict(status.get("userTier"))
    team = _dict(plan.get("defaultTeamConfig"))

    def flag(source: dict, key: str) -> bool:
        return source.get(key) is True

    return UserInfo(
        name=_text(status.get("name"), "Unknown User"),
        email=_text(status.get("email")),
        plan_name=_text(plan.get("planName")),
        tier=_text(tier.get("name") or plan.get("teamsTier")),
        tier_id=_text(tier.get("id")),
        tier_description=_text(tier.get("description")),
        teams_tier=_text(plan.get("teamsTier")),
        upgrade_uri=_text(tier.get("upgradeSubscriptionUri"), ""),
        upgrade_text=_text(tier.get("upgradeSubscriptionText"), ""),
        monthly_prompt_credits=_number(plan.get("monthlyPromptCredits")),
        monthly_flow_credits=_number(plan.get("monthlyFlowCredits")),
        available_prompt_credits=_number(plan_status.get("availablePromptCredits")),
        available_flow_credits=_number(plan_status.get("availableFlowCredits")),
        monthly_flex_credit_purchase_amount=_number(plan.get("monthlyFlexCreditPurchaseAmount")),
        max_chat_input_tokens=_text(plan.get("maxNumChatInputTokens")),
        max_premium_chat_messages=_text(plan.get("maxNumPremiumChatMessages")),
        max_custom_instruction_chars=_text(plan.get("maxCustomChatInstructionCharacters")),
        max_pinned_context_items=_text(plan.get("maxNumPinnedContextItems")),
        max_local_index_size=_text(plan.get("maxLocalIndexSize")),
        browser_enabled=flag(plan, "browserEnabled"),
        knowledge_base_enabled=flag(plan, "knowledgeBaseEnabled"),
        can_buy_more_credits=flag(plan, "canBuyMoreCredits"),
        has_autocomplete_fast_mode=flag(plan, "hasAutocompleteFastMode"),
        web_search_enabled=flag(plan, "cascadeWebSearchEnabled"),
        can_generate_commit_messages=flag(plan, "canGenerateCommitMessages"),
        has_tab_to_jump=flag(plan, "hasTabToJump"),
        allow_sticky_premium_models=flag(plan, "allowStickyPremiumModels"),
        allow_premium_command_models=flag(plan, "allowPremiumCommandModels"),
        can_customize_app_icon=flag(plan, "canCustomizeAppIcon"),
        can_auto_run_commands=flag(plan, "cascadeCanAutoRunCommands"),
        can_run_in_background=flag(plan, "canAllowCascadeInBackground"),
        allow_mcp_servers=flag(team, "allowMcpServers"),
        allow_auto_run_commands=flag(team, "allowAutoRunCommands"),
        allow_browser_experimental_features=flag(team, "allowBrowserExperimentalFeatures"),
        accepted_latest_terms=flag(status, "acceptedLatestTermsOfService"),
    )


def decode_prompt_credits(status: dict) -> PromptCredits | None:
    """Prompt credit balance, or None when the plan declares no monthly limit."""
    plan_status = _dict(status.get("planStatus"))
    plan = plan_status.get("planInfo")
    available = plan_status.get("availablePromptCredits")
    if not isinstance(plan, dict) or available is None:
        return None
    monthly = _number(plan.get("monthlyPromptCredits"))
    if monthly <= 0:
        return None
    return PromptCredits(available=_number(available), monthly=monthly)


def server_sort_order(model_data: dict) -> dict[str, int]:
    """Label -> position from the first (recommended) clientModelSorts entry."""
    sorts = model_data.get("clientModelSorts") or []
    order: dict[str, int] = {}
    if not sorts or not isinstance(sorts[0], dict):
        return order
    for group in sorts[0].get("groups") or []:
        for label in _dict(group).get("modelLabels") or []:
            order.setdefault(label, len(order))
    return order


def sort_models(models: list[QuotaModel], server_order: dict[str, int]) -> list[QuotaModel]:
    """Server order first; unlisted models after, lexically by label."""

    def key(model: QuotaModel) -> tuple:
        index = server_order.get(model.label)
        if index is not None:
            return (0, index, "")
        return (1, 0, model.label.casefold())

    return sorted(models, key=key)


def apply_user_order(items: list, order: list[str], key: str) -> list:
    """Move items named in the user's order list to the front, in that order."""
    if not order:
        return items
    position = {item_id: i for i, item_id in enumerate(order)}
    return sorted(items, key=lambda item: position.get(getattr(item, key), len(position)))


def decode_model(entry: dict, config: Config, now: datetime) -> QuotaModel:
    """Decode one clientModelConfigs entry that carries quotaInfo."""
    quota = entry["quotaInfo"]
    if not isinstance(quota, dict):
        raise PayloadCorrupt(f"quotaInfo is not an object: {quota!r}")

    model_id = _dict(entry.get("modelOrAlias")).get("model") or "unknown"
    label = entry.get("label") or model_id
    fraction = quota.get("remainingFraction")
    if fraction is not None:
        if isinstance(fraction, bool) or not isinstance(fraction, (int, float)):
            raise PayloadCorrupt(f"remainingFraction for {model_id} is not a number: {fraction!r}")
        fraction = float(fraction)

    reset_time = parse_reset_time(quota.get("resetTime"))
    seconds = (reset_time - now).total_seconds()
    percentage = None if fraction is None else fraction * 100

    return QuotaModel(
        model_id=model_id,
        label=label,
        remaining_fraction=fraction,
        reset_time=reset_time,
        seconds_until_reset=seconds,
        countdown=format_countdown(seconds),
        reset_display=format_reset_time(reset_time),
        level=classify_level(percentage, config.thresholds.warning, config.thresholds.critical),
        display_name=config.models.custom_names.get(model_id, ""),
        is_pinned=config.models.is_pinned(model_id),
    )


def decode(raw: Any, config: Config, now: datetime | None = None) -> Snapshot:
    """Decode a GetUserStatus response body. Groups are left to the grouper.

    Raises:
        PayloadCorrupt: If the payload lacks userStatus or a model entry is malformed
    """
    if now is None:
        now = datetime.now(timezone.utc)
    if not isinstance(raw, dict) or not isinstance(raw.get("userStatus"), dict):
        raise PayloadCorrupt("Response has no userStatus object")

    status = raw["userStatus"]
    model_data = _dict(status.get("cascadeModelConfigData"))
    configs = model_data.get("clientModelConfigs") or []
    if not isinstance(configs, list):
        raise PayloadCorrupt("clientModelConfigs is not a list")

    models = [
        decode_model(entry, config, now)
        for entry in configs
        if isinstance(entry, dict) and entry.get("quotaInfo")
    ]
    models = sort_models(models, server_sort_order(model_data))
    models = apply_user_order(models, config.models.order, "model_id")

    log.debug("payload_decoded", models=len(models), configs=len(configs))
    return Snapshot(
        timestamp=now,
        is_connected=True,
        models=tuple(models),
        user_info=decode_user_info(status),
        prompt_credits=decode_prompt_credits(status),
    )
