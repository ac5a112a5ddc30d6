# errors.py
from typing import Optional


class ConfigurationError(RuntimeError):
    """Unknown provider, missing key or missing gateway model mapping."""


class ProviderError(RuntimeError):
    """
    A vendor SDK call failed. The message is always
    '<Vendor> API error: <vendor message>'.
    """

    def __init__(self, provider: str, message: Optional[str] = None):
        self.provider = provider
        self.vendor_message = (message or "").strip() or "Unknown error"
        super().__init__(f"{provider} API error: {self.vendor_message}")

    @classmethod
    def wrap(cls, provider: str, exc: BaseException) -> "ProviderError":
        if isinstance(exc, ProviderError):
            return exc
        return cls(provider, getattr(exc, "message", None) or str(exc))


class ChatStreamError(RuntimeError):
    """Terminal error on the client side of a chat turn."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


def short_error_message(err: str) -> str:
    s = (err or "").strip()

    if "RESOURCE_EXHAUSTED" in s or "Quota exceeded" in s:
        return "Gemini quota exceeded (rate limit). Try again later or switch model."

    if "invalid x-api-key" in s.lower() or "Incorrect API key" in s:
        return "Invalid API key. Check your key in settings."

    first = s.splitlines()[0] if s else "Unknown error"
    return (first[:140] + "…") if len(first) > 140 else first
