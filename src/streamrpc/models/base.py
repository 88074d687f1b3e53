"""Language model capability boundary.

Procedures talk to models through one call:

    invoke(prompt_or_messages, output=OutputContract, *, system, attachments)

The output contract decides what comes back:

    text           Awaitable[str]
    text_stream    AsyncIterator[str]           (token fragments)
    object         Awaitable[dict]              (validated against a schema)
    object_stream  AsyncIterator[dict]          (increasingly complete snapshots)
    choice         Awaitable[str]               (one of a fixed set)

Streaming modes return the iterator directly (nothing is awaited), so a
handler can hand it straight back as its result.

Providers implement a single primitive, ``stream_text``; every other mode
is derived from it here.

Example:
    >>> model = ScriptedModel("claude-3-5-haiku-latest")
    >>> async for token in model.invoke("Hi", TEXT_STREAM):
    ...     print(token, end="")
    >>> label = await model.invoke("I love it", choice("positive", "negative", "neutral"))
"""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, TypeAlias, runtime_checkable

import orjson
from pydantic import BaseModel, ConfigDict, ValidationError

from streamrpc.foundation.core import ChatMessage
from streamrpc.foundation.errors import JsonDict, UpstreamError
from streamrpc.runtime.observability import get_logger

from .partial import snapshots

log = get_logger("streamrpc.models")

Prompt: TypeAlias = "str | Sequence[ChatMessage]"


class OutputMode(StrEnum):
    TEXT = "text"
    TEXT_STREAM = "text_stream"
    OBJECT = "object"
    OBJECT_STREAM = "object_stream"
    CHOICE = "choice"


@dataclass(frozen=True, slots=True)
class OutputContract:
    """What a model call must produce.

    Attributes:
        mode: Output mode
        schema: Target pydantic model (object modes)
        choices: Allowed answers (choice mode)
    """
    mode: OutputMode = OutputMode.TEXT
    schema: type[BaseModel] | None = None
    choices: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.mode in (OutputMode.OBJECT, OutputMode.OBJECT_STREAM) and self.schema is None:
            raise ValueError(f"{self.mode} output requires a schema")
        if self.mode is OutputMode.CHOICE and not self.choices:
            raise ValueError("choice output requires at least one choice")

    @property
    def streaming(self) -> bool:
        return self.mode in (OutputMode.TEXT_STREAM, OutputMode.OBJECT_STREAM)

    def instructions(self) -> str | None:
        """System prompt addendum steering the model toward this contract."""
        match self.mode:
            case OutputMode.OBJECT | OutputMode.OBJECT_STREAM:
                schema = orjson.dumps(self.schema.model_json_schema()).decode()  # type: ignore[union-attr]
                return ("Respond with a single JSON object and nothing else. "
                        f"It must conform to this JSON schema: {schema}")
            case OutputMode.CHOICE:
                return f"Respond with exactly one of: {', '.join(self.choices)}. No other text."
            case _:
                return None


TEXT = OutputContract(OutputMode.TEXT)
TEXT_STREAM = OutputContract(OutputMode.TEXT_STREAM)


def structured(schema: type[BaseModel]) -> OutputContract:
    return OutputContract(OutputMode.OBJECT, schema=schema)


def structured_stream(schema: type[BaseModel]) -> OutputContract:
    return OutputContract(OutputMode.OBJECT_STREAM, schema=schema)


def choice(*options: str) -> OutputContract:
    return OutputContract(OutputMode.CHOICE, choices=tuple(options))


class Attachment(BaseModel):
    """Image or document given to the model alongside the prompt."""

    model_config = ConfigDict(frozen=True)

    media_type: str
    url: str | None = None
    data: bytes | None = None

    @property
    def is_image(self) -> bool:
        return self.media_type.startswith("image/")


@dataclass(frozen=True, slots=True)
class ModelRequest:
    """One normalized model call, as seen by providers."""
    messages: tuple[ChatMessage, ...]
    output: OutputContract = TEXT
    system: str | None = None
    attachments: tuple[Attachment, ...] = ()

    @property
    def system_prompt(self) -> str | None:
        """Caller system prompt merged with the contract's instructions."""
        parts = [p for p in (self.system, self.output.instructions()) if p]
        return "\n\n".join(parts) or None

    @property
    def last_user(self) -> str:
        return next((m.content for m in reversed(self.messages) if m.role == "user"), "")


@runtime_checkable
class ModelCapability(Protocol):
    """Anything procedures can call for model output."""

    name: str

    def invoke(
        self,
        prompt: Prompt,
        output: OutputContract = TEXT,
        *,
        system: str | None = None,
        attachments: Sequence[Attachment] = (),
    ) -> Awaitable[object] | AsyncIterator[object]: ...

    async def aclose(self) -> None: ...


# ═════════════════════════════════════════════════════════════════════════════
# Base implementation
# ═════════════════════════════════════════════════════════════════════════════


_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


def parse_object(text: str, schema: type[BaseModel], model: str = "") -> JsonDict:
    """Validate a complete JSON reply against its schema.

    Raises:
        UpstreamError: Reply is not valid JSON for the schema
    """
    body = _FENCE.sub("", text.strip())
    start, end = body.find("{"), body.rfind("}")
    try:
        return schema.model_validate_json(body[start:end + 1] if start >= 0 else body).model_dump(mode="json")
    except ValidationError as e:
        raise UpstreamError.create(model, f"Model reply does not match {schema.__name__}: {e.error_count()} errors",
                                   details=text[:500]) from e


def parse_choice(text: str, choices: Sequence[str], model: str = "") -> str:
    """Match a reply to one of the allowed choices (case-insensitive).

    Raises:
        UpstreamError: No choice found in the reply
    """
    answer = text.strip().strip(".\"'").lower()
    for option in choices:
        if answer == option.lower():
            return option
    for option in choices:
        if re.search(rf"\b{re.escape(option.lower())}\b", answer):
            return option
    raise UpstreamError.create(model, f"Model reply is not one of {list(choices)}", details=text[:500])


class LanguageModel(ABC):
    """Base for model capabilities. Subclasses implement ``stream_text``."""

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    @abstractmethod
    def stream_text(self, request: ModelRequest) -> AsyncIterator[str]:
        """Raw reply text as it is generated."""
        ...

    async def aclose(self) -> None:
        """Release provider resources."""

    def invoke(
        self,
        prompt: Prompt,
        output: OutputContract = TEXT,
        *,
        system: str | None = None,
        attachments: Sequence[Attachment] = (),
    ) -> Awaitable[object] | AsyncIterator[object]:
        messages = (ChatMessage(role="user", content=prompt),) if isinstance(prompt, str) else tuple(prompt)
        request = ModelRequest(messages, output, system, tuple(attachments))
        log.debug("model invoked", model=self.name, mode=output.mode.value, messages=len(messages))
        match output.mode:
            case OutputMode.TEXT_STREAM:
                return self.stream_text(request)
            case OutputMode.OBJECT_STREAM:
                return self._object_stream(request)
            case OutputMode.OBJECT:
                return self._object(request)
            case OutputMode.CHOICE:
                return self._choice(request)
            case _:
                return self._text(request)

    async def _text(self, request: ModelRequest) -> str:
        return "".join([token async for token in self.stream_text(request)])

    async def _object(self, request: ModelRequest) -> JsonDict:
        return parse_object(await self._text(request), request.output.schema, self.name)  # type: ignore[arg-type]

    async def _choice(self, request: ModelRequest) -> str:
        return parse_choice(await self._text(request), request.output.choices, self.name)

    async def _object_stream(self, request: ModelRequest) -> AsyncIterator[JsonDict]:
        schema = request.output.schema
        last: JsonDict | None = None
        stream = snapshots(self.stream_text(request))
        try:
            async for snapshot in stream:
                last = snapshot
                yield snapshot
        finally:
            await stream.aclose()
        if last is None:
            raise UpstreamError.create(self.name, "Model produced no JSON object")
        try:
            final = schema.model_validate(last).model_dump(mode="json")  # type: ignore[union-attr]
        except ValidationError as e:
            raise UpstreamError.create(self.name, f"Final object does not match {schema.__name__}: "  # type: ignore[union-attr]
                                       f"{e.error_count()} errors") from e
        if final != last:
            yield final


# ═════════════════════════════════════════════════════════════════════════════
# Scripted model
# ═════════════════════════════════════════════════════════════════════════════


Script: TypeAlias = "Callable[[ModelRequest], str]"


def example_object(schema: type[BaseModel]) -> JsonDict:
    """Deterministic instance of a schema built from its JSON schema."""
    json_schema = schema.model_json_schema()
    return _example(json_schema, json_schema.get("$defs", {}), json_schema.get("title", "item"))  # type: ignore[return-value]


def _example(node: JsonDict, defs: JsonDict, name: str) -> object:
    if "$ref" in node:
        return _example(defs[node["$ref"].rsplit("/", 1)[-1]], defs, name)  # type: ignore[arg-type,union-attr]
    if "default" in node:
        return node["default"]
    if "enum" in node:
        return node["enum"][0]  # type: ignore[index]
    if "const" in node:
        return node["const"]
    if options := node.get("anyOf"):
        usable = [o for o in options if o.get("type") != "null"] or options  # type: ignore[union-attr]
        return _example(usable[0], defs, name)  # type: ignore[arg-type]
    match node.get("type"):
        case "object":
            props: JsonDict = node.get("properties", {})  # type: ignore[assignment]
            return {key: _example(sub, defs, key) for key, sub in props.items()}  # type: ignore[arg-type]
        case "array":
            count = max(int(node.get("minItems", 0)), 2)  # type: ignore[arg-type]
            return [_example(node.get("items", {}), defs, name) for _ in range(count)]  # type: ignore[arg-type]
        case "integer":
            return max(int(node.get("minimum", 1)), 1)  # type: ignore[arg-type]
        case "number":
            return float(node.get("minimum", 1.0))  # type: ignore[arg-type]
        case "boolean":
            return True
        case _:
            return f"{name.replace('_', ' ')} example"


def default_script(request: ModelRequest) -> str:
    """Canned replies shaped by the output contract."""
    output = request.output
    match output.mode:
        case OutputMode.OBJECT | OutputMode.OBJECT_STREAM:
            return orjson.dumps(example_object(output.schema)).decode()  # type: ignore[arg-type]
        case OutputMode.CHOICE:
            return output.choices[0]
        case _:
            topic = request.last_user or "nothing in particular"
            return f"You asked about: {topic}. Here is a short, scripted answer."


class ScriptedModel(LanguageModel):
    """Deterministic model for tests and keyless demos.

    Replies come from ``replies`` in order (cycling), from a script
    callable, or from :func:`default_script`. Every request is recorded.

    Args:
        name: Model name
        replies: Fixed replies, or a callable mapping a request to its reply
        chunk_size: Characters per streamed fragment
        delay: Seconds between fragments
        fail_after: Raise UpstreamError after this many fragments
    """

    def __init__(
        self,
        name: str = "scripted",
        replies: Sequence[str] | Script | None = None,
        *,
        chunk_size: int = 4,
        delay: float = 0.0,
        fail_after: int | None = None,
    ) -> None:
        super().__init__(name)
        self._script: Script = replies if callable(replies) else default_script  # type: ignore[assignment]
        self._replies = list(replies) if replies is not None and not callable(replies) else []
        self.chunk_size = max(chunk_size, 1)
        self.delay = delay
        self.fail_after = fail_after
        self.requests: list[ModelRequest] = []

    def reply_for(self, request: ModelRequest) -> str:
        if self._replies:
            return self._replies[(len(self.requests) - 1) % len(self._replies)]
        return self._script(request)

    async def stream_text(self, request: ModelRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        text = self.reply_for(request)
        for index, start in enumerate(range(0, len(text), self.chunk_size)):
            if self.fail_after is not None and index >= self.fail_after:
                raise UpstreamError.create(self.name, f"Scripted failure after {index} fragments")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield text[start:start + self.chunk_size]
