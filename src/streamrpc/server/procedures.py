"""The demo procedure set.

Every procedure takes a ``model`` field (one of the catalog names) and
hands the model's output straight back, so its result shape follows from
the output contract:

    prompt          LazySequence[str]
    chat            LazySequence[str]                 (caller-held history)
    recipeObject    {narration: LazySequence[str], payload: Scalar}
    recipeStream    {narration: LazySequence[str], payload: LazySequence[snapshot]}
    recipeNarrated  LazySequence (narration, SEPARATOR, snapshots)
    sentiment       Scalar (positive | negative | neutral)
    users           Scalar (list of users)
    describeImage   LazySequence[str]
    extractInvoice  Scalar (invoice object), mutation, multipart upload
"""

from __future__ import annotations

import mimetypes
from collections.abc import AsyncIterator, Awaitable

from pydantic import BaseModel, ConfigDict, Field

from streamrpc.foundation.config import get_settings
from streamrpc.foundation.core import ChatMessage, InvocationKind, UploadedFile
from streamrpc.foundation.registry import ProcedureRegistry
from streamrpc.models import (
    TEXT_STREAM,
    Attachment,
    LanguageModel,
    ModelCatalog,
    ModelName,
    choice,
    structured,
    structured_stream,
)
from streamrpc.runtime.concurrency import compose_narrated

RIDDLE_SYSTEM = "You respond short riddles without answer or clues. Add an explanation of the riddle after"
SENTIMENTS = ("positive", "negative", "neutral")


def _default_model() -> str:
    return get_settings().model.default


# ═════════════════════════════════════════════════════════════════════════════
# Input contracts
# ═════════════════════════════════════════════════════════════════════════════


class ModelInput(BaseModel):
    """Fields shared by every model-backed procedure."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, validate_default=True)

    model: ModelName = Field(default_factory=_default_model)


class PromptInput(ModelInput):
    prompt: str = Field(min_length=1)


class ChatInput(ModelInput):
    messages: list[ChatMessage] = Field(min_length=1)


class SentimentInput(ModelInput):
    text: str = Field(min_length=1)


class ImageInput(ModelInput):
    image_url: str = Field(alias="imageUrl", pattern=r"^https?://")


class InvoiceInput(ModelInput):
    file_content: UploadedFile = Field(alias="fileContent")


# ═════════════════════════════════════════════════════════════════════════════
# Output schemas
# ═════════════════════════════════════════════════════════════════════════════


class Ingredient(BaseModel):
    name: str
    amount: str


class Recipe(BaseModel):
    name: str
    ingredients: list[Ingredient]
    steps: list[str]


class User(BaseModel):
    name: str
    age: int
    email: str
    company: str


class UserList(BaseModel):
    users: list[User]


class LineItem(BaseModel):
    description: str
    quantity: float
    unit_price: float
    amount: float


class Invoice(BaseModel):
    invoice_number: str
    date: str
    vendor: str
    customer: str
    line_items: list[LineItem]
    total: float
    currency: str


# ═════════════════════════════════════════════════════════════════════════════
# Registry
# ═════════════════════════════════════════════════════════════════════════════


def _narration(model: LanguageModel, prompt: str) -> AsyncIterator[str]:
    return model.invoke(  # type: ignore[return-value]
        f"In one or two sentences, say what you are about to write for this request, "
        f"without writing it: {prompt}",
        TEXT_STREAM,
    )


def _image_attachment(url: str) -> Attachment:
    media_type, _ = mimetypes.guess_type(url.split("?", 1)[0])
    return Attachment(media_type=media_type or "image/jpeg", url=url)


def build_registry(models: ModelCatalog, *, pace: float | None = None) -> ProcedureRegistry:
    """Register every procedure against a model catalog.

    Args:
        models: Capabilities by name
        pace: Pause between recipeNarrated payload snapshots (default: composer settings)
    """
    registry = ProcedureRegistry()

    @registry.procedure(input=PromptInput)
    def prompt(params: PromptInput) -> AsyncIterator[str]:
        """Stream the answer to a single prompt."""
        return models[params.model].invoke(params.prompt, TEXT_STREAM)  # type: ignore[return-value]

    @registry.procedure(input=ChatInput)
    def chat(params: ChatInput) -> AsyncIterator[str]:
        """Stream the next assistant turn of a caller-held conversation."""
        return models[params.model].invoke(params.messages, TEXT_STREAM, system=RIDDLE_SYSTEM)  # type: ignore[return-value]

    @registry.procedure(name="recipeObject", input=PromptInput)
    def recipe_object(params: PromptInput) -> dict[str, object]:
        """Narrate, then deliver the whole recipe as one value."""
        model = models[params.model]
        return {"narration": _narration(model, params.prompt), "payload": model.invoke(params.prompt, structured(Recipe))}

    @registry.procedure(name="recipeStream", input=PromptInput)
    def recipe_stream(params: PromptInput) -> dict[str, object]:
        """Narrate and stream recipe snapshots side by side."""
        model = models[params.model]
        return {
            "narration": _narration(model, params.prompt),
            "payload": model.invoke(params.prompt, structured_stream(Recipe)),
        }

    @registry.procedure(name="recipeNarrated", input=PromptInput)
    def recipe_narrated(params: PromptInput) -> AsyncIterator[object]:
        """One sequence: the narration, a separator, then recipe snapshots."""
        model = models[params.model]
        return compose_narrated(
            _narration(model, params.prompt),
            model.invoke(params.prompt, structured_stream(Recipe)),  # type: ignore[arg-type]
            pace=pace,
        )

    @registry.procedure(input=SentimentInput)
    def sentiment(params: SentimentInput) -> Awaitable[object]:
        """Classify a text as positive, negative or neutral."""
        return models[params.model].invoke(params.text, choice(*SENTIMENTS))  # type: ignore[return-value]

    @registry.procedure(input=PromptInput)
    async def users(params: PromptInput) -> list[object]:
        """Generate a list of fictional users."""
        result = await models[params.model].invoke(params.prompt, structured(UserList))  # type: ignore[misc]
        return result["users"]

    @registry.procedure(name="describeImage", input=ImageInput)
    def describe_image(params: ImageInput) -> AsyncIterator[str]:
        """Stream a description of the image at a URL."""
        return models[params.model].invoke(  # type: ignore[return-value]
            "Describe this image.", TEXT_STREAM, attachments=[_image_attachment(params.image_url)],
        )

    @registry.procedure(name="extractInvoice", input=InvoiceInput, kind=InvocationKind.MUTATION)
    def extract_invoice(params: InvoiceInput) -> Awaitable[object]:
        """Extract structured data from an uploaded invoice."""
        upload = params.file_content
        return models[params.model].invoke(  # type: ignore[return-value]
            "Extract the invoice data from the attached document.",
            structured(Invoice),
            attachments=[Attachment(media_type=upload.media_type, data=upload.data)],
        )

    return registry
