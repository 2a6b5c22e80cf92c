"""
AWS Lambda handler for inbound SES emails.

Thin orchestration layer that delegates to InviteProcessor.
Policy: filtered messages succeed silently; any failing stage raises one
generic error. Details are logged to CloudWatch.
"""

import asyncio
import logging
import os
from typing import Dict, Any, List, Optional

from domain.errors import StepFailedError
from domain.invite_processor import InviteProcessor

# Configure logging
logger = logging.getLogger()
logger.setLevel(os.environ.get('LOG_LEVEL', 'INFO').upper())

# Add console handler for local testing (AWS Lambda provides handlers automatically)
if not logger.handlers:
    console_handler = logging.StreamHandler()
    formatter = logging.Formatter('%(levelname)s - %(message)s')
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

logger.info("Calendar AI Bot // Version 1.0.0")

# Initialize processor once at module level (reused across invocations)
invite_processor = InviteProcessor()


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Process one SES receipt notification.

    Args:
        event: Lambda event from the SES receipt rule
        context: Lambda context

    Returns:
        Dict with status "success" (also when the message was filtered)

    Raises:
        StepFailedError: If any pipeline stage failed
    """
    request_id = getattr(context, 'aws_request_id', None)
    logger.info(f"Calendar AI Bot - Started (request_id={request_id})")

    errors: List[Optional[Exception]] = []
    asyncio.run(invite_processor.process(event, errors.append))

    error = errors[0] if errors else StepFailedError()
    if error is not None:
        raise error

    return {'status': 'success'}
