"""Run command - the long-running build/deploy loop."""

from __future__ import annotations

import signal
from pathlib import Path
from types import FrameType

import typer

from shipit.cli.context import build_context, require_gh
from shipit.core.config import DEFAULT_CONFIG_NAME
from shipit.pipeline.engine import Engine, build_engine


def _install_signal_handlers(engine: Engine) -> None:
    def _refresh(signum: int, frame: FrameType | None) -> None:
        del signum, frame
        engine.notify()

    def _stop(signum: int, frame: FrameType | None) -> None:
        del signum, frame
        engine.stop()

    # An external webhook receiver signals "refs changed" with SIGUSR1 or SIGHUP.
    for name in ("SIGUSR1", "SIGHUP"):
        sig = getattr(signal, name, None)
        if sig is not None:
            signal.signal(sig, _refresh)
    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


def run(
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_NAME), "--config", "-c", help="Path to shipit.toml"
    ),
    once: bool = typer.Option(
        False, "--once", help="Run a single cycle, wait for its actions, then exit."
    ),
) -> None:
    """Build every branch and pull request; deploy the primary and staging branches."""
    ctx = build_context(config)
    require_gh(ctx)

    engine = build_engine(ctx.config, console=ctx.console, workdir=ctx.workdir)
    ctx.console.header(f"shipit: {ctx.config.repo}")
    try:
        if once:
            engine.run(once=True)
            engine.wait_idle()
        else:
            _install_signal_handlers(engine)
            engine.run()
    finally:
        engine.shutdown()
