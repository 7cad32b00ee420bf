"""Decides whether a reference is built or deployed.

Routing is pure and total:

- the primary branch deploys to the production slot;
- the staging branch deploys to the staging slot;
- every other branch and every pull-request head is built only.

Pull-request heads never deploy, even when the PR's source branch has the
same name as a deployment branch.
"""

from __future__ import annotations

from dataclasses import dataclass

from shipit.core.config import Config, SlotConfig
from shipit.pipeline.model import CompanionHead, Reference

__all__ = ["Action", "BuildAction", "DeployAction", "route"]


@dataclass(frozen=True, slots=True)
class BuildAction:
    ref: Reference
    context: str


@dataclass(frozen=True, slots=True)
class DeployAction:
    ref: Reference
    slot: SlotConfig
    companion: CompanionHead | None

    @property
    def context(self) -> str:
        return self.slot.context


Action = BuildAction | DeployAction


def route(ref: Reference, companion: CompanionHead | None, config: Config) -> Action:
    match ref.branch:
        case str(branch) if branch == config.branches.primary:
            return DeployAction(ref=ref, slot=config.production, companion=companion)
        case str(branch) if branch == config.branches.staging:
            return DeployAction(ref=ref, slot=config.staging, companion=companion)
        case _:
            return BuildAction(ref=ref, context=config.status.build_context)
