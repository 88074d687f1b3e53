"""Central registry mapping procedure names to handlers and input contracts.

The registry provides:
- Procedure registration and lookup by name
- Input validation against a pydantic contract before any handler runs
- Dispatch: handler invocation plus one-time result classification

Example:
    >>> registry = ProcedureRegistry()
    >>>
    >>> class PromptInput(BaseModel):
    ...     prompt: str
    >>>
    >>> @registry.procedure(input=PromptInput)
    ... async def prompt(params: PromptInput):
    ...     async for token in model.invoke(params.prompt, TEXT_STREAM):
    ...         yield token
    >>>
    >>> shape = await registry.dispatch(ProcedureCall("prompt", {"prompt": "Hi"}))
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TypeVar, overload

from pydantic import BaseModel, ConfigDict, ValidationError

from streamrpc.foundation.core import InvocationKind, ProcedureCall, ResultShape, classify
from streamrpc.foundation.errors import BadInput, JsonDict, NotFound

P = TypeVar("P", bound=BaseModel)
Handler = Callable[[P], object]


class NoInput(BaseModel):
    """Contract for procedures that take no input."""
    model_config = ConfigDict(extra="forbid")


def format_validation_error(e: ValidationError) -> str:
    """Compact one-line rendering of pydantic validation errors."""
    parts = [f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()]
    return "; ".join(parts)


@dataclass(frozen=True, slots=True)
class Procedure:
    """A registered procedure.

    Attributes:
        name: Unique procedure name
        contract: Pydantic model validating and parsing raw input
        handler: Function receiving the parsed input
        kind: Query or mutation
        description: Short human-readable summary
    """
    name: str
    contract: type[BaseModel]
    handler: Handler = field(repr=False)
    kind: InvocationKind = InvocationKind.QUERY
    description: str = ""

    def describe(self) -> JsonDict:
        """Schema listing for discovery endpoints."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "description": self.description,
            "input": self.contract.model_json_schema(),
        }


class ProcedureRegistry:
    """Central registry of callable procedures.

    The registry itself performs no I/O; handlers may.
    """

    __slots__ = ("_procedures",)

    def __init__(self) -> None:
        self._procedures: dict[str, Procedure] = {}

    def register(
        self,
        name: str,
        contract: type[BaseModel] | None,
        handler: Handler,
        *,
        kind: InvocationKind | str = InvocationKind.QUERY,
        description: str | None = None,
    ) -> Procedure:
        """Register a handler under ``name``.

        Raises:
            ValueError: If the name is already taken
        """
        if name in self._procedures:
            raise ValueError(f"Procedure '{name}' already registered. Use unregister() first.")
        proc = Procedure(
            name=name,
            contract=contract or NoInput,
            handler=handler,
            kind=InvocationKind(kind),
            description=description if description is not None else inspect.getdoc(handler) or "",
        )
        self._procedures[name] = proc
        return proc

    @overload
    def procedure(self, func: Handler) -> Handler: ...

    @overload
    def procedure(
        self,
        *,
        name: str | None = None,
        input: type[BaseModel] | None = None,  # noqa: A002 - mirrors the wire field
        kind: InvocationKind | str = InvocationKind.QUERY,
        description: str | None = None,
    ) -> Callable[[Handler], Handler]: ...

    def procedure(
        self,
        func: Handler | None = None,
        *,
        name: str | None = None,
        input: type[BaseModel] | None = None,  # noqa: A002
        kind: InvocationKind | str = InvocationKind.QUERY,
        description: str | None = None,
    ) -> Handler | Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`; the function name is the default procedure name."""
        def decorator(fn: Handler) -> Handler:
            self.register(name or fn.__name__, input, fn, kind=kind, description=description)
            return fn

        return decorator(func) if func is not None else decorator

    def unregister(self, name: str) -> bool:
        """Remove a procedure by name. Returns True if found."""
        return self._procedures.pop(name, None) is not None

    def get(self, name: str) -> Procedure | None:
        return self._procedures.get(name)

    def __getitem__(self, name: str) -> Procedure:
        return self._procedures[name]

    def __contains__(self, name: object) -> bool:
        return name in self._procedures

    def __len__(self) -> int:
        return len(self._procedures)

    def __iter__(self) -> Iterator[Procedure]:
        return iter(self._procedures.values())

    # ─────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────

    def resolve(self, call: ProcedureCall) -> tuple[Procedure, BaseModel]:
        """Look up and validate a call without running anything.

        Raises:
            NotFound: Unknown procedure
            BadInput: Kind mismatch or input failing the contract
        """
        proc = self._procedures.get(call.procedure)
        if proc is None:
            raise NotFound.create(call.procedure, f"No procedure named '{call.procedure}'")
        if InvocationKind(call.kind) is not proc.kind:
            raise BadInput.create(
                call.procedure,
                f"'{call.procedure}' is a {proc.kind.value}, called as {InvocationKind(call.kind).value}",
            )
        raw = {} if call.input is None else call.input
        try:
            params = raw if isinstance(raw, proc.contract) else proc.contract.model_validate(raw)
        except ValidationError as e:
            raise BadInput.create(call.procedure, format_validation_error(e)) from e
        return proc, params

    async def dispatch(self, call: ProcedureCall) -> ResultShape:
        """Validate, invoke the handler, and classify what it returned.

        Coroutine handlers are awaited first; anything else they return
        (generators, mappings with live fields, awaitables) is classified
        as-is without being pulled.
        """
        proc, params = self.resolve(call)
        result = proc.handler(params)
        if inspect.iscoroutinefunction(proc.handler):
            result = await result  # type: ignore[misc]
        return classify(result)
