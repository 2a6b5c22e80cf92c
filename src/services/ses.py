"""
SES operations utilities for Lambda handlers.

This module sends raw MIME messages through the Amazon SES v2 API.
"""

import logging
import os
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# Configure SES client with timeouts to prevent infinite hangs
ses_config = Config(
    retries={
        'max_attempts': 1,  # 1 attempt total (no retries)
        'mode': 'standard'
    },
    connect_timeout=10,
    read_timeout=30
)

region = os.environ.get('AWS_REGION', os.environ.get('AWS_DEFAULT_REGION', 'us-east-1'))

# Module-level client (reused across invocations)
ses_client = boto3.client('sesv2', region_name=region, config=ses_config)
logger.info(f"SES client initialized: region={region}, connect=10s, read=30s, max_attempts=1")


def send_raw_email(from_address: str, to_address: str, raw_message: bytes, reply_to: Optional[str] = None) -> str:
    """
    Send a raw MIME message.

    Args:
        from_address: Envelope/From address (must be verified in SES)
        to_address: Single recipient
        raw_message: Serialized MIME message
        reply_to: Optional Reply-To address

    Returns:
        str: SES MessageId

    Raises:
        ValueError: If an address or the message is empty
        ClientError: If SES rejects the message
    """
    if not from_address:
        raise ValueError("From address cannot be empty")
    if not to_address:
        raise ValueError("Recipient address cannot be empty")
    if not raw_message:
        raise ValueError("Raw message cannot be empty")

    params = {
        'FromEmailAddress': from_address,
        'Destination': {'ToAddresses': [to_address]},
        'Content': {'Raw': {'Data': raw_message}},
    }
    if reply_to:
        params['ReplyToAddresses'] = [reply_to]

    try:
        logger.info(f"Sending email via SES: from={from_address}, to={to_address}, size={len(raw_message)} bytes")
        response = ses_client.send_email(**params)
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        error_message = e.response.get('Error', {}).get('Message', str(e))
        logger.error(
            f"SES send_email failed: to={to_address}, "
            f"error_code={error_code}, error_message={error_message}"
        )
        raise

    message_id = response.get('MessageId', '')
    logger.info(f"SES accepted message: message_id={message_id}")
    return message_id
