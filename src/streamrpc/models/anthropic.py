"""Anthropic Messages API over httpx streaming."""

from __future__ import annotations

import base64
from collections.abc import AsyncIterator

import httpx

from streamrpc.foundation.errors import JsonDict, UpstreamError

from .base import Attachment, LanguageModel, ModelRequest
from .sse import iter_sse, raise_for_status

API_VERSION = "2023-06-01"


def _source(attachment: Attachment) -> JsonDict:
    if attachment.url is not None:
        return {"type": "url", "url": attachment.url}
    return {
        "type": "base64",
        "media_type": attachment.media_type,
        "data": base64.b64encode(attachment.data or b"").decode(),
    }


def _content_blocks(request: ModelRequest) -> list[JsonDict]:
    """Messages in Anthropic format; attachments join the last user turn."""
    messages: list[JsonDict] = [
        {"role": m.role, "content": m.content} for m in request.messages if m.role != "system"
    ]
    if request.attachments and messages:
        last = messages[-1]
        last["content"] = [
            *({"type": "image" if a.is_image else "document", "source": _source(a)} for a in request.attachments),
            {"type": "text", "text": last["content"]},
        ]
    return messages


class AnthropicModel(LanguageModel):
    """Claude models through the Messages API with ``stream: true``."""

    def __init__(
        self,
        name: str,
        *,
        api_key: str,
        base_url: str = "https://api.anthropic.com",
        max_tokens: int = 1024,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(name)
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None  # Lazy httpx client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"x-api-key": self._api_key, "anthropic-version": API_VERSION},
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _body(self, request: ModelRequest) -> JsonDict:
        system = "\n\n".join(p for p in (
            *(m.content for m in request.messages if m.role == "system"), request.system_prompt,
        ) if p)
        body: JsonDict = {
            "model": self.name,
            "max_tokens": self._max_tokens,
            "messages": _content_blocks(request),
            "stream": True,
        }
        if system:
            body["system"] = system
        return body

    async def stream_text(self, request: ModelRequest) -> AsyncIterator[str]:
        try:
            async with self._get_client().stream("POST", "/v1/messages", json=self._body(request)) as response:
                await raise_for_status(response, self.name)
                async for event in iter_sse(response):
                    match event.event:
                        case "content_block_delta":
                            delta = event.json().get("delta", {})  # type: ignore[union-attr]
                            if delta.get("type") == "text_delta" and (text := delta.get("text")):
                                yield text
                        case "error":
                            error = event.json().get("error", {})  # type: ignore[union-attr]
                            raise UpstreamError.create(self.name, error.get("message") or "Provider stream error",
                                                       details=event.data[:500])
                        case "message_stop":
                            return
        except httpx.TransportError as e:
            raise UpstreamError.create(self.name, f"Provider request failed: {e or type(e).__name__}") from e
