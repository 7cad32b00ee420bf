from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import typer

from shipit.core.config import Config, load_config
from shipit.core.errors import ErrorCode
from shipit.core.result import Err
from shipit.github.api import ensure_gh_auth, ensure_gh_available
from shipit.output.console import ConsoleProtocol, RichConsole


@dataclass(frozen=True, slots=True)
class CLIContext:
    config_path: Path
    config: Config
    console: ConsoleProtocol

    @property
    def workdir(self) -> Path:
        return self.config_path.parent


def build_context(config_path: Path) -> CLIContext:
    """Load the config or exit; a broken config must never start the loop."""
    path = config_path.expanduser().resolve()
    result = load_config(path)
    if isinstance(result, Err):
        typer.echo(f"error: {result.error.message}", err=True)
        raise typer.Exit(code=int(ErrorCode.CONFIG_ERROR))

    return CLIContext(config_path=path, config=result.value, console=RichConsole())


def require_gh(ctx: CLIContext) -> None:
    for preflight in (ensure_gh_available, lambda: ensure_gh_auth(workdir=ctx.workdir)):
        check = preflight()
        if isinstance(check, Err):
            ctx.console.error(check.error.message)
            if check.error.hint:
                ctx.console.print(f"hint: {check.error.hint}")
            raise typer.Exit(code=int(ErrorCode.ENV_ERROR))
