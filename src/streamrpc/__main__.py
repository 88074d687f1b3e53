"""Command line entry point.

Usage:
    python -m streamrpc serve [--host HOST] [--port PORT]
    python -m streamrpc demo prompt "Tell me a joke"
    python -m streamrpc demo chat
    python -m streamrpc demo recipe-narrated "Pancakes"
    python -m streamrpc demo invoice ./invoice.pdf
"""

from __future__ import annotations

import argparse
import asyncio
import mimetypes
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from streamrpc.client import (
    ChatSession,
    RpcClient,
    Spinner,
    TerminalRenderer,
    render_composite,
    render_narrated,
    render_text,
)
from streamrpc.foundation.config import get_settings
from streamrpc.foundation.core import BinaryPayload
from streamrpc.foundation.errors import RpcException
from streamrpc.runtime.observability import configure_logging

Demo = Callable[[RpcClient, argparse.Namespace, TerminalRenderer], Awaitable[object]]

DEFAULT_IMAGE = "https://upload.wikimedia.org/wikipedia/commons/4/47/PNG_transparency_demonstration_1.png"


# ═════════════════════════════════════════════════════════════════════════════
# Demos
# ═════════════════════════════════════════════════════════════════════════════


def _model(args: argparse.Namespace) -> dict[str, str]:
    return {"model": args.model} if args.model else {}


async def _prompt(client: RpcClient, args: argparse.Namespace, out: TerminalRenderer) -> object:
    async with Spinner() as spinner:
        tokens = await client.prompt.query(prompt=args.text or "Tell me a joke", **_model(args))
        return await render_text(tokens, out, spinner)


async def _chat(client: RpcClient, args: argparse.Namespace, out: TerminalRenderer) -> object:
    session = ChatSession(client, model=args.model)
    loop = asyncio.get_running_loop()
    while True:
        question = (await loop.run_in_executor(None, input, "> ")).strip()
        if question in ("", "exit", "quit"):
            return session.history
        async with Spinner() as spinner:
            await render_text(session.ask(question), out, spinner)
        out.newline()


async def _recipe(client: RpcClient, args: argparse.Namespace, out: TerminalRenderer) -> object:
    procedure = "recipeStream" if args.demo == "recipe-stream" else "recipeObject"
    async with Spinner() as spinner:
        result = await client.query(procedure, {"prompt": args.text or "Pancakes", **_model(args)})
        return await render_composite(result, out, spinner)


async def _recipe_narrated(client: RpcClient, args: argparse.Namespace, out: TerminalRenderer) -> object:
    async with Spinner() as spinner:
        sequence = await client.recipeNarrated.query(prompt=args.text or "Pancakes", **_model(args))
        return await render_narrated(sequence, out, spinner)


async def _sentiment(client: RpcClient, args: argparse.Namespace, out: TerminalRenderer) -> object:
    async with Spinner():
        label = await client.sentiment.query(text=args.text or "I love this library", **_model(args))
    out.narration(f"{label}\n")
    return label


async def _users(client: RpcClient, args: argparse.Namespace, out: TerminalRenderer) -> object:
    async with Spinner():
        users = await client.users.query(prompt=args.text or "Generate 3 users", **_model(args))
    out.snapshot(users)
    return users


async def _image(client: RpcClient, args: argparse.Namespace, out: TerminalRenderer) -> object:
    async with Spinner() as spinner:
        tokens = await client.describeImage.query(imageUrl=args.text or DEFAULT_IMAGE, **_model(args))
        return await render_text(tokens, out, spinner)


async def _invoice(client: RpcClient, args: argparse.Namespace, out: TerminalRenderer) -> object:
    if not args.text:
        raise SystemExit("invoice demo needs a file path")
    path = Path(args.text)
    media_type, _ = mimetypes.guess_type(path.name)
    upload = BinaryPayload(
        path.read_bytes(), media_type or "application/octet-stream", path.name,
        part_name="fileContent", fields=_model(args),
    )
    async with Spinner():
        invoice = await client.extractInvoice.mutate(upload)
    out.snapshot(invoice)
    return invoice


DEMOS: dict[str, Demo] = {
    "prompt": _prompt,
    "chat": _chat,
    "recipe": _recipe,
    "recipe-stream": _recipe,
    "recipe-narrated": _recipe_narrated,
    "sentiment": _sentiment,
    "users": _users,
    "image": _image,
    "invoice": _invoice,
}


async def run_demo(args: argparse.Namespace) -> int:
    out = TerminalRenderer()
    async with RpcClient(args.url) as client:
        try:
            await DEMOS[args.demo](client, args, out)
        except RpcException:
            return 1
    out.newline()
    return 0


# ═════════════════════════════════════════════════════════════════════════════
# Entry
# ═════════════════════════════════════════════════════════════════════════════


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="streamrpc", description="Streaming RPC server and demo client")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Serve the demo procedures")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    demo = commands.add_parser("demo", help="Call a demo procedure and render the result")
    demo.add_argument("demo", choices=sorted(DEMOS))
    demo.add_argument("text", nargs="?", default=None, help="Prompt, text, image URL or file path")
    demo.add_argument("--url", default=None, help="Server URL (default: STREAMRPC_CLIENT_URL)")
    demo.add_argument("--model", default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging = get_settings().logging
    configure_logging(logging.format, logging.level)
    if args.command == "serve":
        from streamrpc.server import serve

        serve(host=args.host, port=args.port)
        return 0
    try:
        return asyncio.run(run_demo(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
