"""CLI commands for quota-radar."""

import click


@click.group()
@click.version_option()
def main() -> None:
    """Watch Antigravity model quotas from the local language server."""
    pass


async def _connect(config, transport=None):
    """Discover the server and return (locator, client); client is None when offline."""
    from quota_radar.client import TelemetryClient
    from quota_radar.locator import ProcessLocator
    from quota_radar.probe import ConnectionProbe
    from quota_radar.strategies import select_strategy

    strategy = select_strategy()
    probe = ConnectionProbe(
        strategy,
        timeout=config.discovery.probe_timeout,
        command_timeout=config.discovery.command_timeout,
        transport=transport,
    )
    locator = ProcessLocator(strategy, probe, config.discovery)
    target = await locator.discover()
    if target is None:
        return locator, None

    client = TelemetryClient(config, transport=transport)
    client.engage(target)
    return locator, client


async def _fetch_snapshot(config):
    """Discover and poll once. Returns (snapshot, error message)."""
    locator, client = await _connect(config)
    if client is None:
        return None, str(locator.last_failure or "Language server not found")

    errors = []
    client.on_malfunction(lambda e: errors.append(f"{type(e).__name__}: {e}"))
    snapshot = await client.poll_once()
    if snapshot is None:
        return None, errors[0] if errors else "Poll failed"
    return snapshot, None


def _load_config():
    """Load config, turning bad values into a CLI error."""
    from quota_radar.config import Config

    try:
        return Config.load()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@main.command()
def run() -> None:
    """Run the monitor in the foreground."""
    import asyncio

    from quota_radar.monitor import run_monitor

    asyncio.run(run_monitor(_load_config()))


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON")
def status(as_json: bool) -> None:
    """Discover the server, poll once and print quotas."""
    import asyncio
    import json

    from quota_radar import logging as console
    from quota_radar.formatting import format_credits, format_percentage

    config = _load_config()
    console.configure(config)

    snapshot, error = asyncio.run(_fetch_snapshot(config))
    if snapshot is None:
        if as_json:
            from quota_radar.models import Snapshot

            click.echo(json.dumps(Snapshot.offline(error).to_dict(), indent=2))
        else:
            click.echo(f"Offline: {error}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(snapshot.to_dict(), indent=2))
        return

    user = snapshot.user_info
    if user is not None:
        click.echo(f"User: {user.name} <{user.email}>")
        click.echo(f"Plan: {user.plan_name} ({user.tier})")
    credits = snapshot.prompt_credits
    if credits is not None:
        click.echo(
            f"Prompt credits: {format_credits(credits.available, credits.monthly)} "
            f"({format_percentage(credits.remaining_percentage, 0)} left)"
        )
    click.echo()
    console.quota_update(snapshot)


@main.command()
def discover() -> None:
    """Find the language server and print its port."""
    import asyncio

    from quota_radar import logging as console

    config = _load_config()
    console.configure(config)

    locator, client = asyncio.run(_connect(config))
    if client is None:
        click.echo(f"Not found: {locator.last_failure}", err=True)
        if locator.last_diagnostics:
            click.echo("\nRelated processes:")
            click.echo(locator.last_diagnostics)
        raise SystemExit(1)

    target = client.target
    click.echo(f"Port: {target.port}")
    click.echo(f"PID: {target.pid}")
    click.echo(f"Token: {target.masked_token}")


@main.command()
def diagnose() -> None:
    """List processes that look related and print troubleshooting steps."""
    import asyncio

    from quota_radar.locator import ProcessLocator
    from quota_radar.probe import ConnectionProbe
    from quota_radar.strategies import select_strategy

    config = _load_config()
    strategy = select_strategy()
    locator = ProcessLocator(strategy, ConnectionProbe(strategy), config.discovery)

    click.echo(f"Platform: {strategy.platform}")
    click.echo(f"Target process: {strategy.process_name}")
    click.echo(f"Process tool: {strategy.sub_tool}")
    click.echo()

    output = asyncio.run(locator.run_diagnostics())
    if output:
        click.echo(output)
    else:
        click.echo("No related processes found.")

    click.echo()
    click.echo("Troubleshooting:")
    for step in strategy.troubleshooting():
        click.echo(f"  - {step}")


@main.group()
def group() -> None:
    """Manage quota pool grouping."""
    pass


@group.command("auto")
def group_auto() -> None:
    """Recompute groups from a fresh poll and save them."""
    import asyncio

    from quota_radar import logging as console
    from quota_radar.grouper import recompute

    config = _load_config()
    console.configure(config)

    snapshot, error = asyncio.run(_fetch_snapshot(config))
    if snapshot is None:
        click.echo(f"Offline: {error}", err=True)
        raise SystemExit(1)

    membership = recompute(
        snapshot.models,
        config.grouping.fingerprint_precision,
        config.grouping.fingerprint_tolerance,
    )
    config.set_memberships(membership)

    groups: dict[str, list[str]] = {}
    for model_id, group_id in membership.items():
        groups.setdefault(group_id, []).append(model_id)
    click.echo(f"Saved {len(groups)} groups for {len(membership)} models")
    for group_id, model_ids in groups.items():
        click.echo(f"  {group_id}: {', '.join(model_ids)}")


@group.command("rename")
@click.argument("model_ids", nargs=-1, required=True)
@click.option("--name", "-n", required=True, help="New group name")
def group_rename(model_ids: tuple[str, ...], name: str) -> None:
    """Name the group containing MODEL_IDS."""
    config = _load_config()
    config.rename_group(list(model_ids), name.strip())
    click.echo(f"Group named '{name.strip()}' for {len(model_ids)} models")


@group.command("clear")
@click.confirmation_option(prompt="Clear all saved group memberships?")
def group_clear() -> None:
    """Forget saved memberships; every model stays alone until `group auto`."""
    config = _load_config()
    config.clear_memberships()
    click.echo("Group memberships cleared")


@group.command("pin")
@click.argument("group_id")
def group_pin(group_id: str) -> None:
    """Pin or unpin a group."""
    config = _load_config()
    pinned = config.toggle_pinned_group(group_id)
    click.echo(f"{group_id}: {'pinned' if group_id in pinned else 'unpinned'}")


@group.command("toggle")
def group_toggle() -> None:
    """Turn grouping on or off."""
    config = _load_config()
    enabled = config.toggle_grouping()
    click.echo(f"Grouping {'enabled' if enabled else 'disabled'}")


@main.group()
def model() -> None:
    """Manage per-model display preferences."""
    pass


@model.command("rename")
@click.argument("model_id")
@click.argument("display_name", default="")
def model_rename(model_id: str, display_name: str) -> None:
    """Set a display name for MODEL_ID (omit the name to reset it)."""
    config = _load_config()
    config.rename_model(model_id, display_name)
    if display_name.strip():
        click.echo(f"{model_id} renamed to '{display_name.strip()}'")
    else:
        click.echo(f"{model_id} name reset")


@model.command("pin")
@click.argument("model_id")
def model_pin(model_id: str) -> None:
    """Pin or unpin a model."""
    config = _load_config()
    config.toggle_pinned_model(model_id)
    state = "pinned" if config.models.is_pinned(model_id) else "unpinned"
    click.echo(f"{model_id}: {state}")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[polling]")
    click.echo(f"  refresh_interval = {cfg.polling.refresh_interval}")
    click.echo(f"  http_timeout = {cfg.polling.http_timeout}")
    click.echo(f"  overlap_policy = {cfg.polling.overlap_policy}")
    click.echo()
    click.echo("[thresholds]")
    click.echo(f"  warning = {cfg.thresholds.warning}")
    click.echo(f"  critical = {cfg.thresholds.critical}")
    click.echo()
    click.echo("[grouping]")
    click.echo(f"  enabled = {cfg.grouping.enabled}")
    click.echo(f"  fingerprint_precision = {cfg.grouping.fingerprint_precision}")
    click.echo(f"  fingerprint_tolerance = {cfg.grouping.fingerprint_tolerance}")
    click.echo(f"  memberships = {len(cfg.grouping.memberships)} models")
    click.echo()
    click.echo("[discovery]")
    click.echo(f"  max_attempts = {cfg.discovery.max_attempts}")
    click.echo(f"  command_timeout = {cfg.discovery.command_timeout}")
    click.echo()
    click.echo("[notifications]")
    click.echo(f"  enabled = {cfg.notifications.enabled}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    cfg = _load_config()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from quota_radar.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


@config.command("thresholds")
@click.argument("warning", type=int)
@click.argument("critical", type=int)
def config_thresholds(warning: int, critical: int) -> None:
    """Set the WARNING and CRITICAL remaining-quota thresholds (percent)."""
    from quota_radar.errors import ConfigurationError

    cfg = _load_config()
    try:
        cfg.update_thresholds(warning, critical)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"Thresholds set: warning {warning}%, critical {critical}%")
