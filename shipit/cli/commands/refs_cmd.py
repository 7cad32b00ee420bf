"""Refs command - show live references and what each would run."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from shipit.cli.context import build_context, require_gh
from shipit.core.config import DEFAULT_CONFIG_NAME
from shipit.core.errors import ErrorCode
from shipit.core.result import Ok
from shipit.git.checkout import CheckoutStore
from shipit.pipeline.deploy import deploy_env, env_lines
from shipit.pipeline.discovery import GithubRefSource, RefDiscovery
from shipit.pipeline.model import CompanionHead
from shipit.pipeline.router import BuildAction, DeployAction, route


def refs(
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_NAME), "--config", "-c", help="Path to shipit.toml"
    ),
) -> None:
    """List live references and the action each one routes to (nothing is run)."""
    ctx = build_context(config)
    require_gh(ctx)
    cfg = ctx.config

    source = GithubRefSource(ctx.workdir)
    discovery = RefDiscovery(
        source,
        cfg.repo,
        staleness=timedelta(days=cfg.pipeline.staleness_days),
        keep_branches=(cfg.branches.primary,),
    )
    found = discovery.discover()
    for error in found.errors:
        ctx.console.warning(f"{error.subject}: {error.message}")
    if found.errors and not found.refs:
        raise typer.Exit(code=int(ErrorCode.NETWORK_ERROR))

    companion: CompanionHead | None = None
    if cfg.companion is not None:
        head = source.head(cfg.companion.repo, cfg.companion.branch)
        if isinstance(head, Ok):
            companion = CompanionHead(cfg.companion.repo, head.value, cfg.companion.env_var)

    checkouts = CheckoutStore(cfg.pipeline.state_dir / "git")
    deployments: list[tuple[str, dict[str, str]]] = []
    table = Table(title=str(cfg.repo), title_justify="left")
    table.add_column("Reference")
    table.add_column("Commit", style="dim")
    table.add_column("Date", style="dim")
    table.add_column("Action")
    table.add_column("Status context")

    for key in sorted(found.refs):
        ref = found.refs[key]
        action = route(ref, companion, cfg)
        date = ref.committed_at.strftime("%Y-%m-%d") if ref.committed_at else "?"
        match action:
            case BuildAction():
                what = "[cyan]build[/cyan]"
            case DeployAction(slot=slot):
                what = f"[green]deploy[/green] {slot.name}"
                deployments.append((slot.name, dict(deploy_env(ref, slot, companion, checkouts))))
        table.add_row(ref.label, ref.short_commit, date, what, action.context)

    console = Console()
    console.print(table)
    for name, env in deployments:
        console.print(f"{name}:", style="bold", markup=False)
        for line in env_lines(env):
            console.print(f"  {line}", markup=False, soft_wrap=True)
