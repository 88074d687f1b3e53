"""Caller-owned chat state.

The server keeps nothing between calls: every ``chat`` call carries the
whole history. ChatSession appends the user turn, streams the reply, and
appends the assistant turn once the reply is complete.

Example:
    >>> chat = ChatSession(client)
    >>> async for token in chat.ask("What is the capital of France?"):
    ...     print(token, end="")
    >>> len(chat.history)
    2
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from streamrpc.foundation.core import ChatHistory, ChatMessage

if TYPE_CHECKING:
    from .client import RpcClient


class ChatSession:
    """Chat history plus the call that extends it.

    Args:
        client: Client used for every turn
        procedure: Streaming chat procedure name
        model: Model name forwarded with each call (server default if None)
        history: Existing history to continue (used in place, not copied)
    """

    __slots__ = ("client", "procedure", "model", "history")

    def __init__(
        self,
        client: RpcClient,
        *,
        procedure: str = "chat",
        model: str | None = None,
        history: ChatHistory | None = None,
    ) -> None:
        self.client = client
        self.procedure = procedure
        self.model = model
        self.history: ChatHistory = history if history is not None else []

    def _payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"messages": [m.model_dump() for m in self.history]}
        if self.model is not None:
            payload["model"] = self.model
        return payload

    async def ask(self, question: str) -> AsyncIterator[str]:
        """Send a user turn and yield the reply's tokens.

        The assistant turn is recorded only when the reply stream ends
        normally; an interrupted reply leaves just the user turn.
        """
        self.history.append(ChatMessage(role="user", content=question))
        tokens: list[str] = []
        reply = await self.client.query(self.procedure, self._payload())
        async for token in reply:
            tokens.append(token)
            yield token
        self.history.append(ChatMessage(role="assistant", content="".join(tokens)))

    async def send(self, question: str) -> str:
        """Like :meth:`ask` but returns the full reply."""
        return "".join([token async for token in self.ask(question)])
