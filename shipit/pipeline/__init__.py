"""Build/deploy pipeline: discovery, routing, cached execution and status."""

from shipit.pipeline.cache import ResultCache, ResultStream
from shipit.pipeline.engine import Engine, StepReport, build_engine
from shipit.pipeline.model import (
    ActionKey,
    CompanionHead,
    ExecutionResult,
    Failure,
    Pending,
    Reference,
    StatusProjection,
    Success,
)
from shipit.pipeline.pool import ExecutionPool
from shipit.pipeline.router import BuildAction, DeployAction, route

__all__ = [
    "ActionKey",
    "BuildAction",
    "CompanionHead",
    "DeployAction",
    "Engine",
    "ExecutionPool",
    "ExecutionResult",
    "Failure",
    "Pending",
    "Reference",
    "ResultCache",
    "ResultStream",
    "StatusProjection",
    "StepReport",
    "Success",
    "build_engine",
    "route",
]
