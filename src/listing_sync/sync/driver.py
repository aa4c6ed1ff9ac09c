"""Step-by-step driver that re-invokes the engine with its continuations.

The engine itself runs exactly one chunk per call; this is the loop a
caller (CLI, scheduler, MCP tool) uses to run an action to completion.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from .engine import SyncEngine
from .models import InitMode, Outcome, PhaseParams, PhaseResult

logger = logging.getLogger(__name__)


def drive(
    engine: SyncEngine,
    action: str,
    params: PhaseParams | dict[str, Any] | None = None,
    max_steps: int | None = None,
    delay: float = 0.0,
    on_step: Callable[[int, PhaseResult], None] | None = None,
) -> PhaseResult:
    """Run *action* until it completes, fails, is canceled or runs out of steps.

    Args:
        engine: The sync engine.
        action: Action kind, e.g. ``import_all``.
        params: Parameters of the first step.  Defaults to a fresh
            (``hard``) start.
        max_steps: Stop after this many steps even if more remain.
        delay: Seconds to sleep between steps.
        on_step: Called with the 1-based step number and its result.

    Returns:
        The result of the last step run.
    """
    if params is None:
        params = PhaseParams(init_mode=InitMode.HARD)

    step = 0
    while True:
        step += 1
        result = engine.run_phase(action, params)
        if on_step is not None:
            on_step(step, result)

        if result.outcome != Outcome.CONTINUE or result.next is None:
            logger.info(
                "%s finished after %d step(s): %s",
                action,
                step,
                result.outcome.value,
            )
            return result
        if max_steps is not None and step >= max_steps:
            logger.info("%s paused after %d step(s)", action, step)
            return result

        params = result.next.to_params()
        if delay > 0:
            time.sleep(delay)
