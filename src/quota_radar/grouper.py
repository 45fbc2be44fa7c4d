# src/quota_radar/grouper.py
"""Quota pool grouping.

Models that draw from one quota pool report the same remaining fraction and
the same reset time. `recompute()` clusters models by that fingerprint and
returns a modelId -> groupId map, which is persisted and reused on every
poll. Fingerprinting each poll would split pools apart as fractions drift,
so `group()` only ever buckets by the stored map.
"""

from __future__ import annotations

import dataclasses
from collections import Counter
from datetime import timezone
from typing import Iterable

import structlog

from quota_radar.config import Config
from quota_radar.decoder import apply_user_order
from quota_radar.models import QuotaGroup, QuotaModel, Snapshot, classify_level

log = structlog.get_logger()

GROUP_ID_SEPARATOR = "_"


def group_id_for(model_ids: Iterable[str]) -> str:
    """Deterministic group id: sorted member ids joined by "_"."""
    return GROUP_ID_SEPARATOR.join(sorted(model_ids))


def fingerprint(model: QuotaModel, precision: int = 6, tolerance: float = 0.0) -> tuple:
    """(bucketed remaining fraction, reset time in UTC) for a model.

    With tolerance 0 the fraction is rounded to `precision` decimals. With a
    positive tolerance it is snapped to the nearest multiple of the tolerance.
    """
    fraction = model.remaining_fraction
    if fraction is not None:
        if tolerance > 0:
            fraction = round(round(fraction / tolerance) * tolerance, precision)
        else:
            fraction = round(fraction, precision)
    return (fraction, model.reset_time.astimezone(timezone.utc).isoformat())


def recompute(
    models: Iterable[QuotaModel], precision: int = 6, tolerance: float = 0.0
) -> dict[str, str]:
    """Cluster models by fingerprint. Returns the membership map to persist."""
    clusters: dict[tuple, list[str]] = {}
    for model in models:
        clusters.setdefault(fingerprint(model, precision, tolerance), []).append(model.model_id)

    membership = {}
    for model_ids in clusters.values():
        group_id = group_id_for(model_ids)
        for model_id in model_ids:
            membership[model_id] = group_id

    log.info("groups_recomputed", models=len(membership), groups=len(clusters))
    return membership


def majority_name(model_ids: list[str], custom_names: dict[str, str]) -> str | None:
    """Most common custom name among members; ties go to the first seen."""
    votes = [custom_names[m] for m in model_ids if custom_names.get(m)]
    if not votes:
        return None
    counts = Counter(votes)
    best = max(counts.values())
    return next(name for name in votes if counts[name] == best)


def _build_group(
    group_id: str,
    members: list[QuotaModel],
    name: str,
    warning: int,
    critical: int,
    pinned: bool,
) -> QuotaGroup:
    known = [m.remaining_percentage for m in members if m.remaining_percentage is not None]
    # No member reported a fraction; leave the pool unknown
    percentage = min(known) if known else None
    first = members[0]
    return QuotaGroup(
        group_id=group_id,
        group_name=name,
        models=tuple(members),
        remaining_percentage=percentage,
        reset_time=first.reset_time,
        countdown=first.countdown,
        reset_display=first.reset_display,
        is_exhausted=any(m.is_exhausted for m in members),
        level=classify_level(percentage, warning, critical),
        is_pinned=pinned,
    )


def group(
    models: Iterable[QuotaModel],
    membership: dict[str, str],
    custom_names: dict[str, str] | None = None,
    *,
    warning: int = 30,
    critical: int = 10,
    pinned: Iterable[str] = (),
    order: list[str] | None = None,
) -> list[QuotaGroup]:
    """Bucket models by their stored group id.

    Models missing from the membership map become singleton groups keyed by
    their own model id. Groups keep the order in which their first member
    appears; a user order list moves the named groups to the front.
    """
    custom_names = custom_names or {}
    pinned = set(pinned)

    buckets: dict[str, list[QuotaModel]] = {}
    for model in models:
        group_id = membership.get(model.model_id, model.model_id)
        buckets.setdefault(group_id, []).append(model)

    groups = []
    ordinal = 0
    for group_id, members in buckets.items():
        name = majority_name([m.model_id for m in members], custom_names)
        if name is None:
            if len(members) == 1:
                name = members[0].label
            else:
                ordinal += 1
                name = f"Group {ordinal}"
        groups.append(_build_group(group_id, members, name, warning, critical, group_id in pinned))

    return apply_user_order(groups, order or [], "group_id")


def group_snapshot(snapshot: Snapshot, config: Config) -> Snapshot:
    """Attach groups to a snapshot when grouping is enabled."""
    if not config.grouping.enabled or not snapshot.is_connected:
        return dataclasses.replace(snapshot, groups=None)
    groups = group(
        snapshot.models,
        config.grouping.memberships,
        config.grouping.custom_names,
        warning=config.thresholds.warning,
        critical=config.thresholds.critical,
        pinned=config.grouping.pinned,
        order=config.grouping.order,
    )
    return dataclasses.replace(snapshot, groups=tuple(groups))
