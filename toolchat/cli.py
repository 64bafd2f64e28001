"""
toolchat CLI

Command-line host for the toolchat core: inspect tool servers, call tools,
read resources and chat with the configured model.
"""

import argparse
import asyncio
import json
import logging
import sys

from toolchat.errors import ToolchatError
from toolchat.app import ToolchatCore
from toolchat.llm_client.model import Conversation


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="toolchat", description="MCP tool servers + chat")
    parser.add_argument("--mcp-config", default=None, help="Tool server config file")
    parser.add_argument("--ai-config", default=None, help="AI provider config file")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("servers", help="List configured servers")

    tools = sub.add_parser("tools", help="List discovered tools")
    tools.add_argument("server", nargs="?", help="Only this server")

    call = sub.add_parser("call", help="Execute a tool")
    call.add_argument("server")
    call.add_argument("tool")
    call.add_argument("arguments", nargs="?", default="{}", help="JSON object")

    resource = sub.add_parser("resource", help="Read a resource")
    resource.add_argument("server")
    resource.add_argument("uri")

    sub.add_parser("chat", help="Interactive chat (/provider <p> <model>, /quit)")
    return parser


def _print_json(value) -> None:
    print(json.dumps(value, indent=2, default=str))


async def _ensure_connected(core: ToolchatCore, server: str) -> None:
    # Servers that do not auto-start are started on demand
    if not any(s["name"] == server and s["connected"] for s in core.list_servers()):
        await core.connect_server(server)


async def _chat(core: ToolchatCore) -> None:
    conversation = Conversation()
    active = core.get_active_provider()
    print(f"[CHAT] {active['provider']} / {active['model']}. Type /quit to exit.")
    while True:
        try:
            line = await asyncio.to_thread(input, "you> ")
        except EOFError:
            break
        line = line.strip()
        if not line:
            continue
        if line == "/quit":
            break
        if line.startswith("/provider"):
            parts = line.split()
            if len(parts) != 3:
                print("usage: /provider <provider> <model>")
                continue
            try:
                core.select_provider(parts[1], parts[2])
            except ToolchatError as e:
                print(f"[ERROR] {e}")
            continue
        try:
            reply = await core.send_chat_message(conversation, line)
        except ToolchatError as e:
            print(f"[ERROR] {e}")
            continue
        print(f"assistant> {reply}")


async def run(args: argparse.Namespace) -> int:
    core = ToolchatCore.from_config(args.mcp_config, args.ai_config)
    try:
        await core.start()
        if args.command == "servers":
            _print_json(core.list_servers())
        elif args.command == "tools":
            if args.server:
                entries = [(args.server, t) for t in core.list_server_tools(args.server)]
            else:
                entries = core.list_all_tools()
            _print_json(
                [
                    {"server": server, "name": t.name, "description": t.description}
                    for server, t in entries
                ]
            )
        elif args.command == "call":
            try:
                arguments = json.loads(args.arguments)
            except json.JSONDecodeError as e:
                print(f"[ERROR] arguments are not valid JSON: {e}", file=sys.stderr)
                return 2
            await _ensure_connected(core, args.server)
            result = await core.execute_tool(args.server, args.tool, arguments)
            _print_json(result.model_dump(mode="json"))
        elif args.command == "resource":
            await _ensure_connected(core, args.server)
            result = await core.access_resource(args.server, args.uri)
            _print_json(result.model_dump(mode="json"))
        elif args.command == "chat":
            await _chat(core)
        return 0
    except ToolchatError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
    finally:
        await core.shutdown()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\n[TOOLCHAT] Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
