"""Configuration system for quota-radar."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

from quota_radar.errors import ConfigurationError

# Threshold bounds (percent of remaining quota)
WARNING_RANGE = (5, 80)
CRITICAL_RANGE = (1, 50)
MIN_REFRESH_INTERVAL = 10
OVERLAP_POLICIES = ("drop", "serialize")


@dataclass
class DiscoveryConfig:
    """Process discovery configuration."""

    max_attempts: int = 3  # Name-search attempts before keyword fallback
    retry_delay: float = 0.1  # Seconds between name-search attempts
    command_timeout: float = 8.0  # Process-listing timeout (PowerShell cold start is slow)
    cold_start_delay: float = 2.0  # Wait before the one free retry after a PowerShell timeout
    diagnostics_timeout: float = 10.0
    probe_timeout: float = 8.0  # Liveness request timeout per port
    offline_retry_delay: float = 30.0  # First automatic retry after discovery fails
    offline_retry_max_delay: float = 600.0  # Backoff cap while offline


@dataclass
class PollingConfig:
    """Telemetry polling configuration."""

    refresh_interval: int = 120  # Seconds between polls
    http_timeout: float = 5.0  # Telemetry request timeout
    overlap_policy: str = "drop"  # "drop" skips a tick while a poll is in flight
    locale: str = "en"

    @property
    def interval_seconds(self) -> float:
        return float(self.refresh_interval)


@dataclass
class ThresholdsConfig:
    """Quota health thresholds in percent remaining.

    Levels:
    - normal: above warning
    - warning: warning or below
    - critical: critical or below
    - depleted: exactly zero
    """

    warning: int = 30
    critical: int = 10

    def validate(self) -> None:
        """Reject out-of-range or inverted thresholds.

        Raises:
            ConfigurationError: If a value is outside its range or critical >= warning
        """
        lo, hi = WARNING_RANGE
        if not lo <= self.warning <= hi:
            raise ConfigurationError(f"warning threshold must be {lo}..{hi}, got {self.warning}")
        lo, hi = CRITICAL_RANGE
        if not lo <= self.critical <= hi:
            raise ConfigurationError(f"critical threshold must be {lo}..{hi}, got {self.critical}")
        if self.critical >= self.warning:
            raise ConfigurationError(
                f"critical threshold ({self.critical}) must be below warning ({self.warning})"
            )


@dataclass
class GroupingConfig:
    """Quota pool grouping configuration.

    memberships is the durable modelId -> groupId map written by auto-group.
    bootstrapped records that the first-run clustering already happened, so an
    emptied map stays empty until auto-group runs again.
    custom_names maps modelId -> group name; a group's name is the majority
    vote among its members' entries.
    """

    enabled: bool = True
    fingerprint_precision: int = 6  # Decimal places of remaining fraction in the fingerprint
    fingerprint_tolerance: float = 0.0  # 0 = exact match after rounding
    show_in_status: bool = True
    bootstrapped: bool = False
    memberships: dict[str, str] = field(default_factory=dict)
    custom_names: dict[str, str] = field(default_factory=dict)
    pinned: list[str] = field(default_factory=list)
    order: list[str] = field(default_factory=list)


@dataclass
class ModelsConfig:
    """Per-model display preferences."""

    custom_names: dict[str, str] = field(default_factory=dict)
    pinned: list[str] = field(default_factory=list)
    order: list[str] = field(default_factory=list)

    def is_pinned(self, model_id: str) -> bool:
        """Case-insensitive pin lookup."""
        return any(p.lower() == model_id.lower() for p in self.pinned)


@dataclass
class NotificationsConfig:
    """Quota alert configuration."""

    enabled: bool = True


@dataclass
class SystemConfig:
    """Logging configuration."""

    log_level: str = "info"
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        elif isinstance(value, dict):
            inline = tomlkit.inline_table()
            for key, item in value.items():
                inline.add(key, item)
            table.add(f.name, inline)
        else:
            table.add(f.name, value)
    return table


def _plain(value: object) -> object:
    """Unwrap tomlkit containers into plain dicts and lists."""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if hasattr(value, "unwrap"):
        return value.unwrap()
    return value


@dataclass
class Config:
    """Main configuration container."""

    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    thresholds: ThresholdsConfig = field(default_factory=ThresholdsConfig)
    grouping: GroupingConfig = field(default_factory=GroupingConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    path: Path | None = field(default=None, repr=False, compare=False)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "quota-radar"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.path or self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "quota-radar"

    @property
    def log_path(self) -> Path:
        """Monitor log path."""
        return self.state_dir / "monitor.log"

    @property
    def pid_path(self) -> Path:
        """PID file path for the foreground monitor."""
        return self.state_dir / "monitor.pid"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        sections = [
            "discovery",
            "polling",
            "thresholds",
            "grouping",
            "models",
            "notifications",
            "system",
        ]
        for name in sections:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions.

        Raises:
            ValueError: If the file is not valid TOML
            ConfigurationError: If thresholds or polling values are out of range
        """
        defaults = cls(path=path)
        path = defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = _plain(tomlkit.load(f))
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        config = cls(
            discovery=_load_discovery_config(data.get("discovery", {})),
            polling=_load_polling_config(data.get("polling", {})),
            thresholds=_load_thresholds_config(data.get("thresholds", {})),
            grouping=_load_grouping_config(data.get("grouping", {})),
            models=_load_models_config(data.get("models", {})),
            notifications=NotificationsConfig(
                enabled=data.get("notifications", {}).get(
                    "enabled", NotificationsConfig().enabled
                ),
            ),
            system=_load_system_config(data.get("system", {})),
            path=path,
        )
        return config

    # --- Mutators used by the monitor and CLI (each persists immediately) ---

    def update_thresholds(self, warning: int, critical: int) -> None:
        """Validate and store new thresholds.

        Raises:
            ConfigurationError: If the pair is invalid; the stored values are unchanged
        """
        candidate = ThresholdsConfig(warning=warning, critical=critical)
        candidate.validate()
        self.thresholds = candidate
        self.save()

    def set_memberships(self, memberships: dict[str, str]) -> None:
        """Replace the persisted group membership map.

        Any explicit membership, including an empty one, ends the first-run
        bootstrap.
        """
        self.grouping.memberships = dict(memberships)
        self.grouping.bootstrapped = True
        self.save()

    def clear_memberships(self) -> None:
        """Drop all memberships; every model becomes a singleton until auto-group runs."""
        self.set_memberships({})

    def rename_group(self, model_ids: list[str], name: str) -> None:
        """Anchor a group name on every member model id."""
        for model_id in model_ids:
            self.grouping.custom_names[model_id] = name
        self.save()

    def rename_model(self, model_id: str, display_name: str) -> None:
        """Set a custom display name; an empty name restores the server label."""
        if display_name.strip():
            self.models.custom_names[model_id] = display_name.strip()
        else:
            self.models.custom_names.pop(model_id, None)
        self.save()

    def toggle_pinned_model(self, model_id: str) -> list[str]:
        """Pin or unpin a model (case-insensitive). Returns the new list."""
        pinned = [p for p in self.models.pinned if p.lower() != model_id.lower()]
        if len(pinned) == len(self.models.pinned):
            pinned.append(model_id)
        self.models.pinned = pinned
        self.save()
        return pinned

    def toggle_pinned_group(self, group_id: str) -> list[str]:
        """Pin or unpin a group. Returns the new list."""
        pinned = list(self.grouping.pinned)
        if group_id in pinned:
            pinned.remove(group_id)
        else:
            pinned.append(group_id)
        self.grouping.pinned = pinned
        self.save()
        return pinned

    def toggle_grouping(self) -> bool:
        """Flip grouping on or off. Returns the new state."""
        self.grouping.enabled = not self.grouping.enabled
        self.save()
        return self.grouping.enabled


def _load_discovery_config(data: dict) -> DiscoveryConfig:
    """Load discovery config from TOML data, using dataclass defaults for missing fields."""
    d = DiscoveryConfig()
    max_attempts = data.get("max_attempts", d.max_attempts)
    if max_attempts < 1:
        raise ConfigurationError(f"max_attempts must be >= 1, got {max_attempts}")
    return DiscoveryConfig(
        max_attempts=max_attempts,
        retry_delay=data.get("retry_delay", d.retry_delay),
        command_timeout=data.get("command_timeout", d.command_timeout),
        cold_start_delay=data.get("cold_start_delay", d.cold_start_delay),
        diagnostics_timeout=data.get("diagnostics_timeout", d.diagnostics_timeout),
        probe_timeout=data.get("probe_timeout", d.probe_timeout),
        offline_retry_delay=data.get("offline_retry_delay", d.offline_retry_delay),
        offline_retry_max_delay=data.get("offline_retry_max_delay", d.offline_retry_max_delay),
    )


def _load_polling_config(data: dict) -> PollingConfig:
    """Load polling config from TOML data."""
    d = PollingConfig()
    refresh_interval = data.get("refresh_interval", d.refresh_interval)
    overlap_policy = data.get("overlap_policy", d.overlap_policy)

    if refresh_interval < MIN_REFRESH_INTERVAL:
        raise ConfigurationError(
            f"refresh_interval must be >= {MIN_REFRESH_INTERVAL}, got {refresh_interval}"
        )
    if overlap_policy not in OVERLAP_POLICIES:
        raise ConfigurationError(
            f"Invalid overlap_policy: {overlap_policy!r}. Must be one of {OVERLAP_POLICIES}"
        )

    return PollingConfig(
        refresh_interval=refresh_interval,
        http_timeout=data.get("http_timeout", d.http_timeout),
        overlap_policy=overlap_policy,
        locale=data.get("locale", d.locale),
    )


def _load_thresholds_config(data: dict) -> ThresholdsConfig:
    """Load thresholds from TOML data and validate them."""
    d = ThresholdsConfig()
    thresholds = ThresholdsConfig(
        warning=data.get("warning", d.warning),
        critical=data.get("critical", d.critical),
    )
    thresholds.validate()
    return thresholds


def _load_grouping_config(data: dict) -> GroupingConfig:
    """Load grouping config from TOML data."""
    d = GroupingConfig()
    precision = data.get("fingerprint_precision", d.fingerprint_precision)
    tolerance = data.get("fingerprint_tolerance", d.fingerprint_tolerance)

    if precision < 0:
        raise ConfigurationError(f"fingerprint_precision must be >= 0, got {precision}")
    if not 0 <= tolerance < 1:
        raise ConfigurationError(f"fingerprint_tolerance must be in [0, 1), got {tolerance}")

    return GroupingConfig(
        enabled=data.get("enabled", d.enabled),
        fingerprint_precision=precision,
        fingerprint_tolerance=tolerance,
        show_in_status=data.get("show_in_status", d.show_in_status),
        bootstrapped=data.get("bootstrapped", d.bootstrapped),
        memberships=dict(data.get("memberships", {})),
        custom_names=dict(data.get("custom_names", {})),
        pinned=list(data.get("pinned", [])),
        order=list(data.get("order", [])),
    )


def _load_models_config(data: dict) -> ModelsConfig:
    """Load per-model preferences from TOML data."""
    return ModelsConfig(
        custom_names=dict(data.get("custom_names", {})),
        pinned=list(data.get("pinned", [])),
        order=list(data.get("order", [])),
    )


def _load_system_config(data: dict) -> SystemConfig:
    """Load logging config from TOML data."""
    d = SystemConfig()
    return SystemConfig(
        log_level=data.get("log_level", d.log_level),
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )
