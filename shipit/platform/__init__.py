"""Process execution."""

from .process import ProcessError, Runner, run

__all__ = ["ProcessError", "Runner", "run"]
