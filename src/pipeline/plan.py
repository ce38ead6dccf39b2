# src/pipeline/plan.py — v1
"""Stage plan — validate and order a stage list.

Stages form a total order by their `order` field. The plan rejects
duplicate names, duplicate orders and gaps, then answers resume
queries against that order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from aetherbuild.core.errors import InvalidStage
from aetherbuild.core.models import Stage

logger = logging.getLogger(__name__)


class StagePlanError(ValueError):
    """Raised when a stage list breaks the ordering invariants."""


@dataclass
class StagePlan:
    """Stages sorted ascending by order."""

    stages: list[Stage] = field(default_factory=list)

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.stages]

    def resolve_start(self, start_stage: str | None) -> Stage:
        """Return the resume stage; the first stage when None.

        Raises:
            InvalidStage: If the name is not in the plan.
        """
        if not self.stages:
            raise StagePlanError("stage list is empty")
        if start_stage is None:
            return self.stages[0]
        for stage in self.stages:
            if stage.name == start_stage:
                return stage
        raise InvalidStage(
            start_stage, f"unknown stage; valid stages: {', '.join(self.names)}"
        )

    def from_stage(self, start: Stage) -> list[Stage]:
        """Stages with order >= start.order."""
        return [s for s in self.stages if s.order >= start.order]


def build_plan(stages: list[Stage]) -> StagePlan:
    """Sort stages and check that orders are unique and contiguous.

    Raises:
        StagePlanError: On duplicate names, duplicate orders or gaps.
    """
    if not stages:
        raise StagePlanError("stage list is empty")

    seen_names: set[str] = set()
    for stage in stages:
        if stage.name in seen_names:
            raise StagePlanError(f"duplicate stage name '{stage.name}'")
        seen_names.add(stage.name)

    ordered = sorted(stages, key=lambda s: s.order)
    for prev, nxt in zip(ordered, ordered[1:]):
        if nxt.order == prev.order:
            raise StagePlanError(
                f"stages '{prev.name}' and '{nxt.name}' share order {prev.order}"
            )
        if nxt.order != prev.order + 1:
            raise StagePlanError(
                f"stage orders are not contiguous: {prev.order} -> {nxt.order}"
            )

    plan = StagePlan(stages=ordered)
    logger.debug("Stage plan: %s", " -> ".join(plan.names))
    return plan
