from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List

logger = logging.getLogger("stockbot.pipeline")


@dataclass
class Step:
    """Named async step; `always_run` steps execute even after a halt."""
    name: str
    fn: Callable[[Any], Awaitable[None]]
    always_run: bool = False


class StepRunner:
    """Runs async steps in order until one marks the context as done."""

    def __init__(self, steps: List[Step]) -> None:
        self._steps = steps

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    async def run(self, context: Any) -> None:
        """Purpose: Execute steps sequentially, honoring halts and always-run steps.
        Inputs/Outputs: Input is a context with a boolean `done` attribute; no return.
        Side Effects / State: Steps mutate the context.
        Dependencies: Step.fn coroutines.
        Failure Modes: Exceptions in a step propagate; later steps do not run.
        If Removed: Event handling has no ordered flow.
        Testing Notes: A step that sets done=True skips the next regular step but
            not an always_run step.
        """
        # Skip regular steps once a step has produced the final answer.
        for step in self._steps:
            if getattr(context, "done", False) and not step.always_run:
                continue
            logger.debug("step=%s", step.name)
            await step.fn(context)
