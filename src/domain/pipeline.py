"""
Sequential stage runner.

A stage is a callable taking the PipelineContext and returning (directly or
as an awaitable) one of three outcomes:

- Continue(context): hand the context to the next stage
- Halt(context): stop without error (filtered sender, no event found, ...)
- Fail(error): stop and report failure

Stages run strictly one after another; each stage's I/O settles before the
next one starts.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence, Union

from .errors import ConfigurationError, PipelineError
from .models import PipelineContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Continue:
    context: PipelineContext


@dataclass(frozen=True)
class Halt:
    context: PipelineContext


@dataclass(frozen=True)
class Fail:
    error: Exception


StageOutcome = Union[Continue, Halt, Fail]
Stage = Callable[[PipelineContext], Any]


def _stage_name(stage: Any) -> str:
    return getattr(stage, '__name__', repr(stage))


def halt(context: PipelineContext) -> Halt:
    """Mark the context as terminated early and return a Halt outcome."""
    context.early_termination = True
    return Halt(context)


async def run_stages(stages: Sequence[Stage], context: PipelineContext) -> StageOutcome:
    """
    Run stages in order over a shared context.

    Args:
        stages: Ordered stage callables
        context: Initial context

    Returns:
        The final outcome: Continue after the last stage, the first Halt,
        or the first Fail (unexpected exceptions are converted to Fail)
    """
    # A bad entry is rejected before any stage runs
    for stage in stages:
        if not callable(stage):
            logger.error(f"Invalid stage in pipeline: {stage!r}")
            return Fail(ConfigurationError(f"Error: Invalid stage item: {stage!r}"))

    outcome: StageOutcome = Continue(context)

    for stage in stages:
        name = _stage_name(stage)

        try:
            result = stage(context)
            if inspect.isawaitable(result):
                result = await result
        except PipelineError as e:
            logger.error(f"Stage {name} failed: {e}", exc_info=True)
            return Fail(e)
        except Exception as e:
            logger.error(f"Stage {name} raised unexpected error: {e}", exc_info=True)
            return Fail(e)

        if isinstance(result, Fail):
            logger.error(f"Stage {name} failed: {result.error}")
            return result

        if isinstance(result, Halt):
            result.context.early_termination = True
            logger.info(f"Stage {name} terminated the pipeline early")
            return result

        if not isinstance(result, Continue):
            logger.error(f"Stage {name} returned unexpected result: {result!r}")
            return Fail(ConfigurationError(f"Error: Stage {name} returned an invalid result."))

        context = result.context
        outcome = result

    return outcome
