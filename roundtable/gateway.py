"""Chat-completion gateway for making LLM requests."""

import asyncio
import logging
import httpx
from typing import List, Dict, Any, Optional
from .config import (
    OPENROUTER_API_KEY,
    OPENROUTER_API_URL,
    OPENROUTER_SITE_URL,
    OPENROUTER_APP_TITLE,
    ROUNDTABLE_MODEL,
    LLM_TIMEOUT,
    LLM_MAX_RETRIES,
    LLM_RETRY_BASE_DELAY,
)
from .errors import LLMError

logger = logging.getLogger("roundtable.gateway")

NO_RESPONSE = "No response received"


def build_messages(system_prompt: str, user_message: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_message},
    ]


def _error_message(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or "API error occurred")
    return str(error)


def _build_headers() -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {OPENROUTER_API_KEY}",
        "Content-Type": "application/json",
    }
    if OPENROUTER_SITE_URL:
        headers["HTTP-Referer"] = OPENROUTER_SITE_URL
    if OPENROUTER_APP_TITLE:
        headers["X-Title"] = OPENROUTER_APP_TITLE
    return headers


async def query_model(
    system_prompt: str,
    user_message: str,
    model: Optional[str] = None,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    Send a (system prompt, user message) pair to the completion endpoint.

    Args:
        system_prompt: Instructions for the model
        user_message: The user turn
        model: Model identifier, defaults to ROUNDTABLE_MODEL
        timeout: Request timeout in seconds
        transport: Optional httpx transport, used by tests

    Returns:
        The message content of the first choice

    Raises:
        LLMError: on an error body, HTTP failure or exhausted retries
    """
    if not OPENROUTER_API_KEY and transport is None:
        raise LLMError("API key is missing")

    payload: Dict[str, Any] = {
        "model": model or ROUNDTABLE_MODEL,
        "messages": build_messages(system_prompt, user_message),
    }

    headers = _build_headers()
    last_error: Optional[Exception] = None

    for attempt in range(LLM_MAX_RETRIES):
        delay = LLM_RETRY_BASE_DELAY * (2 ** attempt)
        try:
            async with httpx.AsyncClient(timeout=timeout or LLM_TIMEOUT, transport=transport) as client:
                response = await client.post(OPENROUTER_API_URL, headers=headers, json=payload)
        except httpx.HTTPError as e:
            last_error = e
            if attempt < LLM_MAX_RETRIES - 1:
                logger.warning(
                    f"Error querying {payload['model']} (Attempt {attempt + 1}/{LLM_MAX_RETRIES}): {e}. "
                    f"Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                continue
            break

        if response.status_code == 429 and attempt < LLM_MAX_RETRIES - 1:
            logger.warning(f"Rate limited (429) for {payload['model']}. Retrying in {delay}s...")
            await asyncio.sleep(delay)
            continue

        try:
            data = response.json()
        except ValueError:
            data = None

        message = _error_message(data)
        if message:
            raise LLMError(message)
        if response.status_code >= 400:
            raise LLMError(f"HTTP {response.status_code}: {response.text[:200]}")
        if not isinstance(data, dict) or not data.get("choices"):
            raise LLMError(f"Invalid response from {payload['model']}")

        content = (data["choices"][0].get("message") or {}).get("content")
        return content or NO_RESPONSE

    logger.error(f"Final failure for model {payload['model']} after {LLM_MAX_RETRIES} attempts: {last_error}")
    raise LLMError(str(last_error) if last_error else "Rate limited")
