"""
Chat-completion client for event extraction.

This module calls an OpenAI-compatible chat completions endpoint and parses
the model's strict JSON reply into EventInfo.

Usage:
    from integrations import completion

    text = completion.complete(
        prompt="...",
        api_key=config.openai_api_key,
        model=config.openai_model
    )
    event_info = completion.parse_event_response(text)
"""

import json
import logging
import time
from typing import Any, Dict

import requests

from domain.models import EventInfo

logger = logging.getLogger(__name__)

DEFAULT_API_URL = 'https://api.openai.com/v1/chat/completions'
TEMPERATURE = 0.1


class CompletionError(Exception):
    """Raised when the completion service fails or returns a malformed envelope."""
    pass


def _build_request_body(prompt: str, model: str, max_tokens: int) -> Dict[str, Any]:
    return {
        'model': model,
        'messages': [{'role': 'user', 'content': prompt}],
        'max_tokens': max_tokens,
        'temperature': TEMPERATURE,
    }


def complete(
    prompt: str,
    api_key: str,
    model: str,
    api_url: str = DEFAULT_API_URL,
    max_tokens: int = 500,
    timeout: int = 30
) -> str:
    """
    Send one user prompt and return the model's reply text.

    Args:
        prompt: Prompt text (non-empty)
        api_key: Bearer token
        model: Model name
        api_url: Chat completions endpoint
        max_tokens: Response token limit
        timeout: HTTP timeout in seconds

    Returns:
        str: Reply text with surrounding whitespace removed

    Raises:
        CompletionError: On transport errors, non-2xx status, or a response
            without choices[0].message.content
    """
    if not prompt or not isinstance(prompt, str):
        raise CompletionError("Prompt must be a non-empty string")

    start_time = time.time()
    logger.info(f"Calling completion service: model={model}, prompt_length={len(prompt)}")

    try:
        response = requests.post(
            api_url,
            headers={
                'Content-Type': 'application/json',
                'Authorization': f'Bearer {api_key}',
            },
            json=_build_request_body(prompt, model, max_tokens),
            timeout=timeout
        )
    except requests.RequestException as e:
        logger.error(f"Completion request failed: {e}")
        raise CompletionError(f"Completion request failed: {e}") from e

    if not 200 <= response.status_code < 300:
        logger.error(f"Completion API error: status={response.status_code}, body={response.text[:200]}")
        raise CompletionError(f"Completion API error: {response.status_code} {response.text[:200]}")

    try:
        content = response.json()['choices'][0]['message']['content']
    except (ValueError, KeyError, IndexError, TypeError) as e:
        logger.error(f"Malformed completion response: {e}, body={response.text[:200]}")
        raise CompletionError(f"Failed to parse completion response: {e}") from e

    if not isinstance(content, str):
        raise CompletionError("Completion response content is not text")

    logger.info(f"Completion succeeded: response_length={len(content)}, execution_time={time.time() - start_time:.2f}s")
    return content.strip()


def parse_event_response(text: str) -> EventInfo:
    """
    Parse the model's reply as one of the two allowed JSON shapes.

    Raises:
        ValueError: If the text is not JSON or has an unexpected shape
    """
    return EventInfo.from_dict(json.loads(text))
