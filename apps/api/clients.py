# clients.py
import os
from typing import Optional

import anthropic
from google import genai
from openai import AsyncOpenAI

from errors import ConfigurationError

DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# Catalog ids -> OpenRouter ids. Ids that already carry a vendor prefix
# ("anthropic/claude-3.5-sonnet") pass through untouched.
GATEWAY_MODEL_IDS = {
    "gpt-4o": "openai/gpt-4o",
    "gpt-4o-mini": "openai/gpt-4o-mini",
    "gpt-4-turbo": "openai/gpt-4-turbo",
    "gpt-3.5-turbo": "openai/gpt-3.5-turbo",
    "claude-3-5-sonnet-20241022": "anthropic/claude-3.5-sonnet",
    "claude-3-5-haiku-20241022": "anthropic/claude-3.5-haiku",
    "claude-3-opus-20240229": "anthropic/claude-3-opus",
    "gemini-2.0-flash-exp": "google/gemini-2.0-flash-exp:free",
    "gemini-1.5-pro": "google/gemini-pro-1.5",
    "gemini-1.5-flash": "google/gemini-flash-1.5",
}


def gateway_base_url() -> str:
    return os.getenv("OPENROUTER_BASE_URL") or DEFAULT_OPENROUTER_BASE_URL


def resolve_gateway_model(model: str) -> str:
    model = (model or "").strip()
    if "/" in model:
        return model
    mapped = GATEWAY_MODEL_IDS.get(model)
    if not mapped:
        raise ConfigurationError(f"No OpenRouter model mapping for: {model or '(empty)'}")
    return mapped


def _require_key(api_key: Optional[str], provider: str) -> str:
    key = (api_key or "").strip()
    if not key:
        raise ConfigurationError(f"Missing API key for {provider}")
    return key


def get_openai_compatible_client(api_key: str, base_url: Optional[str] = None) -> AsyncOpenAI:
    """
    Returns an OpenAI-compatible client. `base_url=None` talks to OpenAI
    itself; the gateway passes its own base URL.
    """
    key = _require_key(api_key, "OpenAI")
    if base_url:
        return AsyncOpenAI(api_key=key, base_url=base_url)
    return AsyncOpenAI(api_key=key)


def get_anthropic_client(api_key: str) -> anthropic.AsyncAnthropic:
    return anthropic.AsyncAnthropic(api_key=_require_key(api_key, "Anthropic"))


def get_gemini_client(api_key: str) -> genai.Client:
    return genai.Client(api_key=_require_key(api_key, "Google"))


def openrouter_extra_headers() -> dict:
    """
    Optional but recommended by OpenRouter for attribution.
    """
    h = {}
    ref = os.getenv("OPENROUTER_HTTP_REFERER")
    title = os.getenv("OPENROUTER_X_TITLE")
    if ref:
        h["HTTP-Referer"] = ref
    if title:
        h["X-Title"] = title
    return h
