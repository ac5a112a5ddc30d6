# main.py
from pathlib import Path
from dotenv import load_dotenv
load_dotenv(dotenv_path=Path(__file__).resolve().with_name(".env"))
import os
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from errors import ConfigurationError, ProviderError
from providers import BaseProvider, get_provider
from schemas import ChatMessage, ChatRequest, FilePart, ImagePart, TextPart, Usage
from sse import SSE_HEADERS, StreamOptions, relay_sse

logger = structlog.get_logger()

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:3001",
    "http://127.0.0.1:3001",
]

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()] or DEFAULT_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Attachment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    name: Optional[str] = None
    type: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")

    @property
    def mime(self) -> str:
        return (self.mime_type or self.type or "").lower()


class ChatStreamBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessage]
    model: str
    provider: str
    api_key: str = Field(alias="apiKey")
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    reasoning: Optional[Union[bool, str]] = None
    attachments: List[Attachment] = Field(default_factory=list)
    web_search: bool = Field(default=False, alias="webSearch")
    open_router: bool = Field(default=False, alias="openRouter")
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")


def error_response(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "code": code, "status": status_code}},
    )


@app.exception_handler(RequestValidationError)
async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"Invalid request body: {where} {first.get('msg', '')}".strip()
    return error_response(400, message, "INVALID_BODY")


def reasoning_effort(reasoning: Union[bool, str, None]) -> Optional[str]:
    if not reasoning:
        return None
    level = reasoning.lower() if isinstance(reasoning, str) else "medium"
    if level in ("low", "high"):
        return level
    return "medium"


def attach_to_last_user(messages: List[ChatMessage], attachments: List[Attachment]) -> List[ChatMessage]:
    """
    Attaches files to the LAST user message as image/file parts.
    """
    out = list(messages)
    if not attachments:
        return out

    last_user_idx = None
    for i in range(len(out) - 1, -1, -1):
        if out[i].role == "user":
            last_user_idx = i
            break

    if last_user_idx is None:
        logger.warning("attachments_without_user_message", count=len(attachments))
        return out

    content = out[last_user_idx].content
    parts: List[Any] = []
    if isinstance(content, str):
        if content:
            parts.append(TextPart(text=content))
    else:
        parts.extend(content)

    for a in attachments:
        if a.mime.startswith("image/"):
            parts.append(ImagePart(url=a.url))
        else:
            parts.append(FilePart(url=a.url, mime_type=a.mime or "application/octet-stream"))

    out[last_user_idx] = ChatMessage(role="user", content=parts)
    return out


def prepare_chat(body: ChatStreamBody, stream: bool) -> Tuple[BaseProvider, ChatRequest]:
    provider = get_provider(body.provider, body.api_key, use_gateway=body.open_router)
    if provider is None:
        raise ConfigurationError(f"Unsupported provider: {body.provider}")

    if body.web_search:
        logger.info("web_search_requested", chat_id=body.chat_id, provider=body.provider)

    request = ChatRequest(
        messages=attach_to_last_user(body.messages, body.attachments),
        model=body.model,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        stream=stream,
        reasoning_effort=reasoning_effort(body.reasoning),
    )
    return provider, request


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/v1/chat/stream")
async def chat_stream(body: ChatStreamBody):
    log = logger.bind(chat_id=body.chat_id, provider=body.provider, model=body.model)

    try:
        provider, request = prepare_chat(body, stream=True)
        upstream = await provider.chat(request)
    except ConfigurationError as e:
        log.warning("chat_stream_config_error", error=str(e))
        return error_response(400, str(e), "CONFIGURATION_ERROR")
    except ProviderError as e:
        log.error("chat_stream_provider_error", error=str(e))
        return error_response(502, str(e), "PROVIDER_ERROR")

    received: Dict[str, Any] = {"chars": 0, "usage": None}

    def on_text(text: str) -> None:
        received["chars"] += len(text)

    def on_usage(usage: Usage) -> None:
        received["usage"] = usage.model_dump()

    def on_error(err: Exception) -> None:
        log.error("chat_stream_failed", error=str(err), chars=received["chars"])

    def on_stop() -> None:
        log.info("chat_stream_finished", chars=received["chars"], usage=received["usage"])

    options = StreamOptions(on_text=on_text, on_error=on_error, on_usage=on_usage, on_stop=on_stop)
    return StreamingResponse(
        relay_sse(upstream, options),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post("/v1/chat/complete")
async def chat_complete(body: ChatStreamBody):
    try:
        provider, request = prepare_chat(body, stream=False)
        response = await provider.chat(request)
    except ConfigurationError as e:
        return error_response(400, str(e), "CONFIGURATION_ERROR")
    except ProviderError as e:
        logger.error("chat_complete_provider_error", chat_id=body.chat_id, error=str(e))
        return error_response(502, str(e), "PROVIDER_ERROR")

    return response.model_dump(by_alias=True)
