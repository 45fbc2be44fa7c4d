"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers (discovery_*, quota_update, alert_transition, etc.)
5. Structlog configuration (configure, get_structlog)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from quota_radar.formatting import format_percentage

if TYPE_CHECKING:
    from quota_radar.config import Config
    from quota_radar.models import ConnectionTarget, Snapshot

# Rich console for colorful human-readable output
_console = Console(highlight=False)

# Module-level config reference for percent_color (set by configure())
_config: "Config | None" = None

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    SEARCH = "🔍"
    ROCKET = "🚀"
    SIGNAL = "⚡"
    CLIPBOARD = "📋"
    HINT = "💡"
    WARNING = "[yellow]▲[/]"
    CRITICAL = "[bright_red]▼[/]"
    RECOVERED = "[bright_green]▲[/]"
    CONNECTED = "[green]⬤[/]"
    DISCONNECTED = "[red]⬤[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Styling Helpers
# ─────────────────────────────────────────────────────────────────────────────


def percent_color(percentage: float | None) -> str:
    """Return Rich color name for a remaining-quota percentage.

    Requires configure() to have been called first.

    Raises:
        RuntimeError: If configure() hasn't been called.
    """
    if _config is None:
        raise RuntimeError("percent_color() called before configure()")

    if percentage is None:
        return "dim"
    thresholds = _config.thresholds
    if percentage <= thresholds.critical:
        return "bright_red"
    elif percentage <= thresholds.warning:
        return "bright_yellow"
    return "green"


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def monitor_started() -> None:
    """Log monitor startup complete."""
    info("Quota radar online", Icon.ROCKET)


def monitor_stopping() -> None:
    """Log monitor shutdown initiated."""
    info("Monitor stopping...", Icon.WAIT)


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def discovery_started(process_name: str, attempts: int) -> None:
    """Log start of a discovery run."""
    info(f"Scanning for [cyan]{process_name}[/] [dim](max {attempts} attempts)[/]", Icon.SEARCH)


def discovery_found(target: ConnectionTarget) -> None:
    """Log a verified connection target."""
    info(
        f"Language server on port [bold]{target.port}[/] "
        f"[dim](pid {target.pid}, token {target.masked_token})[/]",
        Icon.OK,
    )


def discovery_failed(log_path: str, retry_in: float | None = None) -> None:
    """Log the offline notice with retry and log-inspection hints."""
    error("Language server not found, quota telemetry is offline", Icon.FAIL)
    if retry_in is not None:
        info(f"Retrying in [bold]{retry_in:.0f}s[/]", Icon.WAIT)
    info(
        f"Retry now with [bold]kill -HUP {os.getpid()}[/] or inspect [dim]{escape(log_path)}[/]",
        Icon.HINT,
    )


def config_reloaded(path: str) -> None:
    """Log a config file reload."""
    info(f"Config reloaded from [dim]{escape(path)}[/]", Icon.OK)


def diagnostics_output(output: str) -> None:
    """Log diagnostics command output for troubleshooting."""
    if output.strip():
        info(f"Related processes:\n[dim]{escape(output[:2000])}[/]", Icon.CLIPBOARD)
    else:
        warn("No related processes found (language_server/antigravity)")


def signal_lost(detail: str) -> None:
    """Log a lost connection that triggers re-discovery."""
    warn(f"Signal lost, re-scanning [dim]({escape(detail)})[/]", Icon.DISCONNECTED)


def malfunction(kind: str, detail: str) -> None:
    """Log a classified telemetry failure."""
    error(f"{kind}: {escape(detail)}")


def poll_skipped() -> None:
    """Log a tick dropped because the previous poll is still running."""
    warn("Previous poll still in flight, tick skipped")


def alert_transition(label: str, state: str, percentage: float | None, countdown: str) -> None:
    """Log a model moving between alert states."""
    pct = format_percentage(percentage)
    label = escape(label)
    if state == "exhausted":
        error(f"[cyan]{label}[/] quota exhausted, resets in {countdown}", Icon.CRITICAL)
    elif state == "critical":
        warn(f"[cyan]{label}[/] critically low: [bright_red]{pct}[/]", Icon.CRITICAL)
    elif state == "warned":
        warn(f"[cyan]{label}[/] running low: [bright_yellow]{pct}[/]", Icon.WARNING)
    else:
        info(f"[cyan]{label}[/] quota recovered: [green]{pct}[/]", Icon.RECOVERED)


def quota_update(snapshot: Snapshot) -> None:
    """Print a quota summary table for a snapshot."""
    show_groups = snapshot.groups is not None and (
        _config is None or _config.grouping.show_in_status
    )
    if show_groups:
        table = Table(title="Quota pools", title_justify="left", box=None, pad_edge=False)
        table.add_column("Group")
        table.add_column("Remaining", justify="right")
        table.add_column("Resets in", justify="right")
        table.add_column("Models", style="dim")
        for group in snapshot.groups:
            color = percent_color(group.remaining_percentage)
            pin = "📌 " if group.is_pinned else ""
            table.add_row(
                f"{pin}{escape(group.group_name)}",
                f"[{color}]{format_percentage(group.remaining_percentage)}[/]",
                group.countdown,
                escape(", ".join(m.name for m in group.models)),
            )
    else:
        table = Table(title="Model quotas", title_justify="left", box=None, pad_edge=False)
        table.add_column("Model")
        table.add_column("Remaining", justify="right")
        table.add_column("Resets in", justify="right")
        for model in snapshot.models:
            color = percent_color(model.remaining_percentage)
            pin = "📌 " if model.is_pinned else ""
            table.add_row(
                f"{pin}{escape(model.name)}",
                f"[{color}]{format_percentage(model.remaining_percentage)}[/]",
                model.countdown,
            )
    _console.print(table)


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config) -> None:
    """Configure structlog with JSON Lines file output.

    Console output is handled by Rich (see log functions above); structlog
    only writes to the rotating JSON file for machine parsing.

    Args:
        config: Application config with paths
    """
    global _config
    _config = config

    level = _LOG_LEVELS.get(config.system.log_level.lower(), logging.INFO)

    # Ensure state directory exists for log file
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(level)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("monitor"),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_structlog() -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance for JSON file output."""
    return structlog.get_logger()
