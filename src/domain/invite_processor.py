"""
Calendar invite pipeline - core business logic.

This module handles the end-to-end processing of one SES receipt
notification:
1. Parse the SES notification
2. Filter the sender (invitation responses, whitelist)
3. Fetch the raw email from S3
4. Verify SPF/DKIM (optional)
5. Extract event details with the completion service
6. Send the calendar invite back to the sender

Filtered messages end the run early without an error. Any failing stage
ends the run; the caller's callback receives one generic StepFailedError
and the detailed cause is only logged.
"""

import logging
from typing import Any, Callable, Dict, Optional, Sequence

from .config import BotConfig
from .errors import ConfigurationError, StepFailedError
from .models import PipelineContext
from .pipeline import Fail, Halt, Stage, StageOutcome, run_stages
from .stages import DEFAULT_STAGES

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[Optional[Exception]], Any]


class InviteProcessor:
    """
    Runs the invite pipeline for inbound SES notifications.

    Args:
        config: Fixed configuration (default: read from the environment on
            every invocation)
        stages: Stage list override (default: DEFAULT_STAGES)
    """

    def __init__(self, config: Optional[BotConfig] = None, stages: Optional[Sequence[Stage]] = None):
        self._config = config
        self._stages = list(stages) if stages is not None else list(DEFAULT_STAGES)

    def _load_config(self) -> BotConfig:
        config = self._config if self._config is not None else BotConfig.from_env()
        config.validate()
        return config

    async def process(self, event: Dict[str, Any], callback: CompletionCallback) -> Optional[StageOutcome]:
        """
        Process one inbound notification.

        Args:
            event: SES receipt notification
            callback: Called once with None on success (including early
                termination) or with StepFailedError on failure

        Returns:
            The final stage outcome, or None if configuration was invalid
        """
        try:
            config = self._load_config()
        except ConfigurationError as e:
            logger.error(f"Invalid configuration: {e}")
            callback(StepFailedError())
            return None

        context = PipelineContext(raw_event=event, config=config)
        outcome = await run_stages(self._stages, context)

        if isinstance(outcome, Fail):
            logger.error(f"Step returned error: {outcome.error}")
            callback(StepFailedError())
            return outcome

        if isinstance(outcome, Halt):
            logger.info("Calendar AI Bot process finished early (nothing to send).")
        else:
            logger.info("Calendar AI Bot process finished successfully.")

        callback(None)
        return outcome
