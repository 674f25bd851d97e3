import json
import logging
import os
import re
import time

import requests

logger = logging.getLogger(__name__)

# AI API Configuration
AI_API_KEY = os.getenv("AI_API_KEY", "")
AI_API_TYPE = os.getenv("AI_API_TYPE", "google")
AI_MODEL = os.getenv("AI_MODEL", "models/gemini-2.0-flash")
AI_TIMEOUT = int(os.getenv("AI_TIMEOUT", "30"))

MAX_RETRIES = 3


class AIServiceError(ValueError):
    """Raised when the text-generation provider cannot produce a reply."""


def _gemini_endpoint(model_id, api_key):
    # Robust endpoint construction
    if "/" in model_id:
        return f"https://generativelanguage.googleapis.com/v1beta/{model_id}:generateContent?key={api_key}"
    return f"https://generativelanguage.googleapis.com/v1beta/models/{model_id}:generateContent?key={api_key}"


def _error_message(response):
    try:
        error_data = response.json() if response.text else {}
    except ValueError:
        error_data = {}
    return error_data.get('error', {}).get('message', response.text or 'Unknown error')


def _post_google(prompt):
    payload = {'contents': [{'role': 'user', 'parts': [{'text': prompt}]}]}
    return requests.post(
        _gemini_endpoint(AI_MODEL, AI_API_KEY),
        headers={'Content-Type': 'application/json'},
        json=payload,
        timeout=AI_TIMEOUT,
    )


def _post_openai(prompt):
    return requests.post(
        'https://api.openai.com/v1/chat/completions',
        headers={
            'Authorization': f'Bearer {AI_API_KEY}',
            'Content-Type': 'application/json'
        },
        json={
            'model': AI_MODEL,
            'messages': [{'role': 'user', 'content': prompt}],
            'temperature': 0.7,
        },
        timeout=AI_TIMEOUT,
    )


def _read_reply(result_data):
    if AI_API_TYPE == 'openai':
        choices = result_data.get('choices') or []
        if choices:
            return choices[0].get('message', {}).get('content', '')
        return ''

    candidates = result_data.get('candidates') or []
    if not candidates:
        return ''
    parts = candidates[0].get('content', {}).get('parts') or []
    return ''.join(part.get('text', '') for part in parts)


def generate_text(prompt):
    """Send a single prompt to the configured provider and return the reply text.

    Retries on rate limiting (HTTP 429) and on transport errors with an
    exponential back-off. Every other failure raises ``AIServiceError``.
    """
    if not AI_API_KEY:
        raise AIServiceError("AI_API_KEY not configured")
    if AI_API_TYPE not in ('google', 'openai'):
        raise AIServiceError(f"Unknown AI API type: {AI_API_TYPE}. Supported types: google, openai")

    retry_delay = 2  # initial delay in seconds

    for attempt in range(MAX_RETRIES):
        logger.info("Calling %s API with model %s (attempt %d)", AI_API_TYPE, AI_MODEL, attempt + 1)
        try:
            if AI_API_TYPE == 'openai':
                response = _post_openai(prompt)
            else:
                response = _post_google(prompt)
        except requests.exceptions.RequestException as e:
            if attempt < MAX_RETRIES - 1:
                logger.warning("Connection error: %s. Retrying in %ss...", e, retry_delay)
                time.sleep(retry_delay)
                retry_delay *= 2
                continue
            raise AIServiceError(f"{type(e).__name__}: {e}") from e

        if response.status_code == 429:
            wait_time = retry_delay
            # Try to parse "retry in X.Xs" from message
            match = re.search(r'retry in ([\d\.]+)s', _error_message(response).lower())
            if match:
                wait_time = float(match.group(1)) + 1
            if attempt < MAX_RETRIES - 1:
                logger.warning("Rate limited by %s. Retrying in %ss...", AI_API_TYPE, wait_time)
                time.sleep(wait_time)
                retry_delay *= 2
                continue
            raise AIServiceError("Rate limited by AI provider. Please try again later.")

        if response.status_code != 200:
            error_msg = _error_message(response)
            logger.error("%s API error (%s): %s", AI_API_TYPE, response.status_code, error_msg)
            raise AIServiceError(f"API Error: {error_msg}")

        reply = _read_reply(response.json())
        if not reply.strip():
            raise AIServiceError("Unexpected response format from AI API")
        logger.info("%s API success", AI_API_TYPE)
        return reply

    raise AIServiceError("Maximum retries exceeded. Please try again later.")


def extract_json(raw):
    """Parse JSON out of a model reply that may be wrapped in Markdown fences."""
    raw = (raw or "").strip()
    if raw.startswith("```"):
        raw = raw.strip("`")
        if raw.lower().startswith("json"):
            raw = raw[4:].lstrip()

    try:
        return json.loads(raw)
    except ValueError:
        pass

    for opener, closer in (("[", "]"), ("{", "}")):
        start = raw.find(opener)
        end = raw.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(raw[start:end + 1])
            except ValueError:
                continue
    raise ValueError("Reply did not contain valid JSON")
