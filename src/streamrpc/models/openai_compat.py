"""OpenAI-compatible chat completions (LM Studio, vLLM, ...) over httpx streaming."""

from __future__ import annotations

import base64
from collections.abc import AsyncIterator

import httpx
import orjson

from streamrpc.foundation.errors import JsonDict, UpstreamError

from .base import Attachment, LanguageModel, ModelRequest
from .sse import iter_sse, raise_for_status

_DONE = "[DONE]"


def _image_url(attachment: Attachment) -> str:
    if attachment.url is not None:
        return attachment.url
    return f"data:{attachment.media_type};base64,{base64.b64encode(attachment.data or b'').decode()}"


def _messages(request: ModelRequest) -> list[JsonDict]:
    messages: list[JsonDict] = []
    if system := request.system_prompt:
        messages.append({"role": "system", "content": system})
    messages += [{"role": m.role, "content": m.content} for m in request.messages]
    images = [a for a in request.attachments if a.is_image]
    if images and messages:
        last = messages[-1]
        last["content"] = [
            {"type": "text", "text": last["content"]},
            *({"type": "image_url", "image_url": {"url": _image_url(a)}} for a in images),
        ]
    return messages


class OpenAICompatibleModel(LanguageModel):
    """Any server speaking the ``/chat/completions`` streaming protocol."""

    def __init__(
        self,
        name: str,
        *,
        base_url: str,
        api_key: str | None = None,
        max_tokens: int = 1024,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(name)
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None  # Lazy httpx client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"authorization": f"Bearer {self._api_key}"} if self._api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, headers=headers, transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def stream_text(self, request: ModelRequest) -> AsyncIterator[str]:
        body = {"model": self.name, "messages": _messages(request), "max_tokens": self._max_tokens, "stream": True}
        try:
            async with self._get_client().stream("POST", "/chat/completions", json=body) as response:
                await raise_for_status(response, self.name)
                async for event in iter_sse(response):
                    if event.data.strip() == _DONE:
                        return
                    try:
                        payload = event.json()
                    except orjson.JSONDecodeError as e:
                        raise UpstreamError.create(self.name, "Undecodable provider event",
                                                   details=event.data[:500]) from e
                    if isinstance(payload, dict) and (error := payload.get("error")):
                        message = error.get("message") if isinstance(error, dict) else str(error)
                        raise UpstreamError.create(self.name, message or "Provider stream error")
                    for choice in payload.get("choices", ()) if isinstance(payload, dict) else ():
                        if text := (choice.get("delta") or {}).get("content"):
                            yield text
        except httpx.TransportError as e:
            raise UpstreamError.create(self.name, f"Provider request failed: {e or type(e).__name__}") from e
