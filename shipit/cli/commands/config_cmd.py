"""Check-config command - validate shipit.toml without touching GitHub."""

from __future__ import annotations

from pathlib import Path

import typer

from shipit.cli.context import build_context
from shipit.core.config import DEFAULT_CONFIG_NAME


def check_config(
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_NAME), "--config", "-c", help="Path to shipit.toml"
    ),
) -> None:
    """Validate the configuration file and print the effective settings."""
    ctx = build_context(config)
    cfg = ctx.config
    pipeline = cfg.pipeline

    typer.echo(f"repo:        {cfg.repo}")
    if cfg.companion is not None:
        typer.echo(
            f"companion:   {cfg.companion.repo}@{cfg.companion.branch} "
            f"(${cfg.companion.env_var})"
        )
    for slot in cfg.slots:
        branch = cfg.branches.primary if slot.kind == "production" else cfg.branches.staging
        typer.echo(f"{slot.kind + ':':<12} {branch} -> {slot.name} on port {slot.port}")
    typer.echo(f"pool:        {pipeline.pool_capacity}")
    typer.echo(f"staleness:   {pipeline.staleness_days} days")
    typer.echo(f"state dir:   {pipeline.state_dir}")
    typer.echo("ok")
