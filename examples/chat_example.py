"""Interactive chat against the streaming endpoint.

Demonstrates:
- Driving a conversation with ChatSession
- Talking to a running server over HTTP, or to an in-process Runner
- Running ide-mode file tools locally against an in-memory sandbox
- Watching the wire traffic through protocol events

Usage:
    uv run examples/chat_example.py --mode agent
    uv run examples/chat_example.py --mode ide --trace
    uv run --env-file=.env examples/chat_example.py --url http://localhost:8000 --mode chat
"""

import argparse
import asyncio
import uuid

from agentwire.config import Settings
from agentwire.consumer import ChatSession, ProtocolEvent
from agentwire.message import MessageRole
from agentwire.persistence import InMemoryMessageStore
from agentwire.provider import OpenAIProvider, SimulatedProvider
from agentwire.runner import Runner
from agentwire.search import web_search_tools
from agentwire.tools import ToolRegistry, tool
from agentwire.transport import HttpChatTransport, LocalChatTransport

SANDBOX: dict[str, str] = {"/README.md": "# Sandbox\n\nFiles written here live in memory.\n"}


@tool
def read_file(path: str):
    """Read the content of a file in the virtual sandbox."""
    if path not in SANDBOX:
        return {"success": False, "error": f"No such file: {path}"}
    return SANDBOX[path]


@tool
def write_file(path: str, content: str):
    """Create or overwrite a file in the virtual sandbox."""
    SANDBOX[path] = content
    return {"success": True, "path": path, "bytes": len(content)}


@tool
def list_files(path: str = "/"):
    """List files in the virtual sandbox."""
    prefix = path.rstrip("/") + "/"
    return sorted(p for p in SANDBOX if p.startswith(prefix))


@tool
def delete_file(path: str):
    """Delete a file in the virtual sandbox."""
    if SANDBOX.pop(path, None) is None:
        return {"success": False, "error": f"No such file: {path}"}
    return {"success": True}


def print_event(event: ProtocolEvent) -> None:
    if event.type == "req":
        print(f"  -> {event.title}")
    elif event.title != "SSE: Chunk":
        print(f"  <- {event.title}: {str(event.content)[:120]}")


def make_transport(args, settings: Settings):
    if args.url:
        return HttpChatTransport(args.url)
    if settings.api_key:
        provider = OpenAIProvider.from_settings(settings)
    else:
        provider = SimulatedProvider(args.mode, ttfb_ms=300, token_delay_ms=20)
    return LocalChatTransport(Runner(provider, executor=web_search_tools(), settings=settings))


async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--mode", choices=["chat", "agent", "ide"], default="chat")
    parser.add_argument("--url", default=None, help="Origin of a running server")
    parser.add_argument("--trace", action="store_true", help="Print protocol events")
    args = parser.parse_args()

    settings = Settings.from_env()
    session = ChatSession(
        make_transport(args, settings),
        mode=args.mode,
        conversation_id=str(uuid.uuid4()),
        tool_executor=ToolRegistry([read_file, write_file, list_files, delete_file]),
        store=InMemoryMessageStore(),
        settings=settings,
        on_protocol_event=print_event if args.trace else None,
    )

    print(f"agentwire chat ({args.mode} mode)\n")

    while True:
        try:
            user_input = input("You: ")
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        status = await session.send(user_input)
        if status is None:
            continue
        if session.error:
            print(f"Error: {session.error}\n")
            continue
        reply = next(m for m in reversed(session.messages) if m.role == MessageRole.ASSISTANT)
        print(f"Assistant: {reply.content}\n")


if __name__ == "__main__":
    asyncio.run(main())
